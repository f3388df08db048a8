"""Configuration models and YAML loading."""

from plugkeep.config.loader import ConfigError, load_config, save_config
from plugkeep.config.schema import (
    GatewayConfig,
    PluginOptions,
    PluginsConfig,
    PlugkeepConfig,
    SandboxConfig,
)

__all__ = [
    "ConfigError",
    "GatewayConfig",
    "PluginOptions",
    "PluginsConfig",
    "PlugkeepConfig",
    "SandboxConfig",
    "load_config",
    "save_config",
]
