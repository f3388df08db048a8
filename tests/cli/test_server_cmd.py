"""Tests for the serve command."""

from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

from plugkeep.cli.server_cmd import serve_command
from plugkeep.config.loader import save_config
from plugkeep.config.schema import PlugkeepConfig

ECHO = '''
from plugkeep.plugins.base import Plugin

PLUGIN_META = {"version": "1.0.0", "permissions": ["status.query"]}


class Echo(Plugin):
    pass
'''


def write_config(tmp_path: Path) -> Path:
    plugin_dir = tmp_path / "plugins"
    plugin_dir.mkdir()
    (plugin_dir / "echo.py").write_text(ECHO)

    config = PlugkeepConfig()
    config.plugins.plugin_dir = str(plugin_dir)
    config.plugins.entry_point_group = "plugkeep.tests.none"
    config.gateway.port = 8765
    path = tmp_path / "plugkeep.yaml"
    save_config(config, path)
    return path


def test_serve_starts_plugins_and_serves_gateway(tmp_path):
    path = write_config(tmp_path)

    with patch("uvicorn.run") as mock_run:
        serve_command(config_path=str(path))

    mock_run.assert_called_once()
    app = mock_run.call_args.args[0]
    assert mock_run.call_args.kwargs["port"] == 8765
    assert mock_run.call_args.kwargs["host"] == "127.0.0.1"

    with TestClient(app) as client:
        health = client.get("/health").json()
        assert health["active_plugins"] == ["echo"]
        assert "network.request" in health["capabilities"]

        response = client.post(
            "/plugin-api",
            json={"plugin": "echo", "capability": "status.query", "method": "get"},
        )
        assert response.json()["error"]["kind"] == "Unavailable"

        response = client.post(
            "/plugin-api",
            json={"plugin": "ghost", "capability": "status.query", "method": "get"},
        )
        assert response.json()["error"]["kind"] == "NotActive"


def test_serve_overrides_host_and_port(tmp_path):
    path = write_config(tmp_path)

    with patch("uvicorn.run") as mock_run:
        serve_command(config_path=str(path), host="0.0.0.0", port=9001)

    assert mock_run.call_args.kwargs["host"] == "0.0.0.0"
    assert mock_run.call_args.kwargs["port"] == 9001


def test_serve_invalid_config(tmp_path, capsys):
    path = tmp_path / "plugkeep.yaml"
    path.write_text("gateway:\n  port: not-a-port\n")

    with patch("uvicorn.run") as mock_run:
        serve_command(config_path=str(path))

    mock_run.assert_not_called()
    assert "Failed to load config" in capsys.readouterr().out
