"""Pydantic models for plugkeep.yaml configuration."""

from pydantic import BaseModel, ConfigDict, Field


class PluginOptions(BaseModel):
    """Per-plugin sandbox and gateway options.

    Field names are snake_case; the camelCase spellings used in plugin
    manifests and host configuration files are accepted as aliases.
    """

    model_config = ConfigDict(populate_by_name=True)

    permissions: set[str] | None = Field(
        default=None,
        description="Administrator-approved capability identifiers (None = approve all requested)",
    )
    max_memory_mb: float = Field(
        default=256.0,
        alias="maxMemoryMb",
        description="Maximum resident memory attributed to the plugin",
        gt=0,
    )
    max_cpu_seconds: float = Field(
        default=60.0,
        alias="maxCpuSeconds",
        description="Maximum cumulative CPU time attributed to the plugin",
        gt=0,
    )
    max_network_requests_per_window: int = Field(
        default=100,
        alias="maxNetworkRequestsPerWindow",
        description="Maximum outbound network requests per measurement window",
        ge=0,
    )
    allowed_network_destinations: set[str] = Field(
        default_factory=set,
        alias="allowedNetworkDestinations",
        description="Allowed hosts, with wildcard support (e.g. '*.example.com')",
    )
    rate_limit_per_minute: int = Field(
        default=100,
        alias="rateLimitPerMinute",
        description="Gateway token-bucket capacity, refilled continuously per minute",
        ge=1,
    )
    violation_threshold: int = Field(
        default=3,
        alias="violationThreshold",
        description="Violations within the rolling window that force the plugin to Failed",
        ge=1,
    )
    enabled: bool = Field(default=True, description="Whether the plugin is started by start_all")
    config: dict = Field(
        default_factory=dict,
        description="Opaque configuration passed to the plugin's load() hook",
    )


class PluginsConfig(BaseModel):
    """Plugin discovery configuration."""

    plugin_dir: str = Field(
        default="~/.plugkeep/plugins",
        description="Drop-in directory for .py and package plugins",
    )
    entry_point_group: str = Field(
        default="plugkeep.plugins",
        description="Python entry point group scanned for installed plugins",
    )
    blocked: list[str] = Field(
        default_factory=list,
        description="Plugin names that are never discovered",
    )


class SandboxConfig(BaseModel):
    """Security sandbox configuration."""

    sample_interval: float = Field(
        default=1.0,
        description="Seconds between resource-monitor sampling ticks",
        gt=0,
    )
    window_seconds: float = Field(
        default=60.0,
        description="Length of the resource measurement window (network counter rollover)",
        gt=0,
    )
    violation_window_seconds: float = Field(
        default=300.0,
        description="Rolling window over which violations count toward forced termination",
        gt=0,
    )
    reset_violations_on_reload: bool = Field(
        default=False,
        description="Restart the violation count after every successful reload",
    )


class GatewayConfig(BaseModel):
    """Plugin API gateway configuration."""

    host: str = Field(default="127.0.0.1", description="HTTP surface bind address")
    port: int = Field(default=8200, description="HTTP surface port", ge=1, le=65535)
    request_timeout: float = Field(
        default=30.0,
        description="Maximum wait for a host capability response in seconds",
        gt=0,
    )
    bucket_capacity: int | None = Field(
        default=None,
        description="Token-bucket capacity for every plugin (None = each plugin's rate limit per minute)",
        ge=1,
    )
    providers: dict[str, str] = Field(
        default_factory=dict,
        description="Host service base URL per capability identifier (e.g. memory.read)",
    )
    network_enabled: bool = Field(
        default=True,
        description="Bind the outbound HTTP provider for the network.request capability",
    )


class PlugkeepConfig(BaseModel):
    """Root configuration model."""

    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
    defaults: PluginOptions = Field(
        default_factory=PluginOptions,
        description="Options applied to every plugin without an override",
    )
    overrides: dict[str, PluginOptions] = Field(
        default_factory=dict,
        description="Per-plugin option overrides keyed by plugin name",
    )
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    def options_for(self, name: str) -> PluginOptions:
        """Get the effective options for a plugin.

        An override only replaces the fields it sets explicitly; everything
        else comes from ``defaults``.
        """
        override = self.overrides.get(name)
        if override is None:
            return self.defaults
        return self.defaults.model_copy(update=override.model_dump(exclude_unset=True))
