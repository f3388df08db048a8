"""plugkeep - Sandboxed plugin host for extension ecosystems.

plugkeep loads third-party extension code ("plugins") into a host
application and constrains what each plugin may do. Every plugin moves
through an explicit lifecycle, runs under a cooperative security sandbox,
and reaches host capabilities only through a permission-checked,
rate-limited API gateway.

Key modules:

- :mod:`plugkeep.plugins` - Plugin manager, lifecycle state machine, loader, validator
- :mod:`plugkeep.security` - Permission model, security policies, resource monitor, sandbox
- :mod:`plugkeep.gateway` - Plugin API gateway, rate limiting, capability providers
- :mod:`plugkeep.config` - YAML configuration with pydantic validation
"""

__version__ = "0.1.0"
