"""Configuration loading and validation.

The configuration file is located in this order:
1. An explicit path (``--config``)
2. The ``PLUGKEEP_CONFIG`` environment variable
3. ``~/.plugkeep/plugkeep.yaml``

A missing file means zero-config mode: every plugin gets the default options.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from plugkeep.config.schema import PlugkeepConfig, PluginOptions
from plugkeep.security.permissions import parse_capabilities

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PLUGKEEP_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".plugkeep" / "plugkeep.yaml"


class ConfigError(Exception):
    """Configuration loading or validation error."""


def resolve_config_path(path: str | Path | None = None) -> Path:
    """Pick the configuration file to use.

    Args:
        path: Explicit path, taking precedence over the environment

    Returns:
        Path with ``~`` expanded; the file may not exist
    """
    if path is None:
        from_env = os.environ.get(CONFIG_ENV_VAR)
        if from_env:
            logger.debug("Using config from %s=%s", CONFIG_ENV_VAR, from_env)
            path = from_env
        else:
            path = DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def load_config(path: str | Path | None = None) -> PlugkeepConfig:
    """Load and validate plugkeep configuration from a YAML file.

    Args:
        path: Path to config file. If None, the environment variable and then
              the default location are tried. A missing file yields defaults.

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If config file exists but is invalid
    """
    path = resolve_config_path(path)
    if not path.exists():
        logger.debug("No config at %s; using defaults", path)
        return PlugkeepConfig()

    try:
        with open(path) as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config from {path}: {e}") from e

    if config_data is None:
        return PlugkeepConfig()
    if not isinstance(config_data, dict):
        raise ConfigError(f"Config in {path} must be a mapping, got {type(config_data).__name__}")

    try:
        config = PlugkeepConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e

    _warn_suspicious(config, path)
    return config


def _warn_suspicious(config: PlugkeepConfig, path: Path) -> None:
    """Log settings that load fine but probably do not do what was meant."""
    sections: list[tuple[str, PluginOptions]] = [("defaults", config.defaults)]
    sections += [(f"overrides.{name}", options) for name, options in config.overrides.items()]

    for section, options in sections:
        if options.permissions is None:
            continue
        _, unknown = parse_capabilities(options.permissions)
        if unknown:
            logger.warning(
                "%s: %s approves unknown capabilities %s; they are never granted",
                path,
                section,
                sorted(unknown),
            )

    for name in sorted(set(config.overrides) & set(config.plugins.blocked)):
        logger.warning("%s: override for '%s' has no effect, the plugin is blocked", path, name)


def save_config(config: PlugkeepConfig, path: str | Path | None = None) -> None:
    """Save configuration to a YAML file.

    Per-plugin options are written with their camelCase names. Overrides keep
    only the fields they set, so they still merge onto the defaults when the
    file is loaded again.

    Args:
        config: Configuration object to save
        path: Destination path. If None, resolved like :func:`load_config`.
    """
    path = resolve_config_path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Sets are not representable in safe YAML
    config_dict = config.model_dump(mode="json", by_alias=True)
    config_dict["overrides"] = {
        name: options.model_dump(mode="json", by_alias=True, exclude_unset=True)
        for name, options in config.overrides.items()
    }

    with open(path, "w") as f:
        yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
