"""Tests for configuration loading and validation."""

from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
import yaml
from pydantic import ValidationError

from plugkeep.config.loader import (
    CONFIG_ENV_VAR,
    ConfigError,
    load_config,
    resolve_config_path,
    save_config,
)
from plugkeep.config.schema import GatewayConfig, PlugkeepConfig, PluginOptions


def test_default_config():
    """Test that default config has expected values."""
    config = PlugkeepConfig()

    assert config.plugins.plugin_dir == "~/.plugkeep/plugins"
    assert config.plugins.entry_point_group == "plugkeep.plugins"
    assert config.plugins.blocked == []

    assert config.defaults.permissions is None
    assert config.defaults.rate_limit_per_minute == 100
    assert config.defaults.violation_threshold == 3

    assert config.sandbox.sample_interval == 1.0
    assert config.sandbox.reset_violations_on_reload is False

    assert config.gateway.host == "127.0.0.1"
    assert config.gateway.port == 8200
    assert config.gateway.network_enabled is True


def test_load_config_nonexistent_returns_defaults():
    """Test that loading a nonexistent config returns defaults."""
    with TemporaryDirectory() as tmpdir:
        config = load_config(Path(tmpdir) / "nonexistent.yaml")

        assert config.gateway.port == 8200


def test_load_config_empty_file_returns_defaults():
    """Test that an empty config file returns defaults."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "empty.yaml"
        config_path.write_text("")

        config = load_config(config_path)
        assert config.defaults.violation_threshold == 3


def test_load_config_camel_case_options():
    """Test that per-plugin options accept the camelCase spellings."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "plugkeep.yaml"
        config_path.write_text(
            yaml.safe_dump(
                {
                    "overrides": {
                        "weather": {
                            "permissions": ["network.request"],
                            "maxMemoryMb": 64,
                            "maxNetworkRequestsPerWindow": 3,
                            "allowedNetworkDestinations": ["*.weather.example"],
                            "rateLimitPerMinute": 10,
                            "violationThreshold": 5,
                        }
                    }
                }
            )
        )

        config = load_config(config_path)
        options = config.options_for("weather")

        assert options.permissions == {"network.request"}
        assert options.max_memory_mb == 64
        assert options.max_network_requests_per_window == 3
        assert options.allowed_network_destinations == {"*.weather.example"}
        assert options.rate_limit_per_minute == 10
        assert options.violation_threshold == 5


def test_options_for_falls_back_to_defaults():
    """Test that plugins without an override get the defaults."""
    config = PlugkeepConfig(
        defaults=PluginOptions(rate_limit_per_minute=50),
        overrides={"special": PluginOptions(rate_limit_per_minute=5)},
    )

    assert config.options_for("special").rate_limit_per_minute == 5
    assert config.options_for("other").rate_limit_per_minute == 50


def test_override_merges_onto_defaults():
    """Test that an override keeps every default it does not set."""
    config = PlugkeepConfig(
        defaults=PluginOptions(permissions={"status.query"}, violation_threshold=7),
        overrides={"x": PluginOptions(maxMemoryMb=512)},
    )

    options = config.options_for("x")

    assert options.max_memory_mb == 512
    assert options.permissions == {"status.query"}
    assert options.violation_threshold == 7
    assert config.defaults.max_memory_mb == 256


def test_override_from_yaml_merges_onto_defaults():
    """Test merging when options come from a configuration file."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "plugkeep.yaml"
        config_path.write_text(
            yaml.dump(
                {
                    "defaults": {"permissions": ["memory.read"], "rateLimitPerMinute": 20},
                    "overrides": {"notes": {"rateLimitPerMinute": 600}},
                }
            )
        )

        options = load_config(config_path).options_for("notes")

        assert options.rate_limit_per_minute == 600
        assert options.permissions == {"memory.read"}


def test_gateway_bucket_capacity():
    """Test the optional gateway bucket capacity override."""
    assert GatewayConfig().bucket_capacity is None
    assert GatewayConfig(bucket_capacity=10).bucket_capacity == 10

    with pytest.raises(ValidationError):
        GatewayConfig(bucket_capacity=0)


def test_load_config_invalid_yaml():
    """Test that invalid YAML raises ConfigError."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "invalid.yaml"
        config_path.write_text("defaults: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_path)


def test_load_config_invalid_values():
    """Test that out-of-range values raise ConfigError."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "bad.yaml"
        config_path.write_text(yaml.safe_dump({"defaults": {"violationThreshold": 0}}))

        with pytest.raises(ConfigError, match="validation failed"):
            load_config(config_path)


def test_gateway_config_validation():
    """Test GatewayConfig validation."""
    with pytest.raises(ValidationError):
        GatewayConfig(port=70000)

    with pytest.raises(ValidationError):
        GatewayConfig(request_timeout=0)


def test_save_and_load_config():
    """Test saving config and loading it back."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "saved.yaml"

        original = PlugkeepConfig()
        original.plugins.blocked = ["evil"]
        original.overrides["weather"] = PluginOptions(
            permissions={"network.request"},
            allowed_network_destinations={"api.weather.example"},
        )
        original.sandbox.reset_violations_on_reload = True

        save_config(original, config_path)
        assert config_path.exists()

        loaded = load_config(config_path)
        assert loaded.plugins.blocked == ["evil"]
        assert loaded.options_for("weather").permissions == {"network.request"}
        assert loaded.options_for("weather").allowed_network_destinations == {
            "api.weather.example"
        }
        assert loaded.sandbox.reset_violations_on_reload is True


def test_save_config_creates_parent_dirs():
    """Test that save_config creates missing parent directories."""
    with TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "nested" / "dir" / "plugkeep.yaml"

        save_config(PlugkeepConfig(), str(config_path))

        assert config_path.exists()


def test_config_path_from_environment(tmp_path, monkeypatch):
    """Test that PLUGKEEP_CONFIG is used when no path is given."""
    config_path = tmp_path / "from-env.yaml"
    config_path.write_text(yaml.dump({"gateway": {"port": 9100}}))
    monkeypatch.setenv(CONFIG_ENV_VAR, str(config_path))

    assert resolve_config_path() == config_path
    assert load_config().gateway.port == 9100
    assert resolve_config_path(tmp_path / "explicit.yaml") == tmp_path / "explicit.yaml"


def test_load_config_rejects_non_mapping(tmp_path):
    """Test that a YAML list at the top level raises ConfigError."""
    config_path = tmp_path / "list.yaml"
    config_path.write_text("- plugins\n- defaults\n")

    with pytest.raises(ConfigError, match="must be a mapping"):
        load_config(config_path)


def test_load_config_warns_about_unknown_capabilities(tmp_path, caplog):
    """Test that approving an unknown capability is reported."""
    config_path = tmp_path / "plugkeep.yaml"
    config_path.write_text(
        yaml.dump(
            {
                "plugins": {"blocked": ["evil"]},
                "overrides": {
                    "notes": {"permissions": ["memory.read", "memory.wirte"]},
                    "evil": {"maxMemoryMb": 1},
                },
            }
        )
    )

    with caplog.at_level("WARNING", logger="plugkeep.config.loader"):
        load_config(config_path)

    assert "memory.wirte" in caplog.text
    assert "'evil' has no effect" in caplog.text


def test_saved_override_still_merges_onto_defaults(tmp_path):
    """Test that a saved override does not pin unset fields to their defaults."""
    config_path = tmp_path / "saved.yaml"
    original = PlugkeepConfig(defaults=PluginOptions(permissions={"status.query"}))
    original.overrides["x"] = PluginOptions(maxMemoryMb=512)

    save_config(original, config_path)
    saved = yaml.safe_load(config_path.read_text())
    loaded = load_config(config_path)

    assert saved["overrides"] == {"x": {"maxMemoryMb": 512.0}}
    assert loaded.options_for("x").permissions == {"status.query"}
    assert loaded.options_for("x").max_memory_mb == 512
