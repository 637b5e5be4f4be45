"""Core modules: role configuration."""

from hubspoke.core.config import (
    ConfigError,
    HubConfig,
    SpokeConfig,
    RoleConfig,
    RuntimeConfig,
    derive_index_ids,
    load_role_config,
    load_runtime_config,
)

__all__ = [
    "ConfigError",
    "HubConfig",
    "SpokeConfig",
    "RoleConfig",
    "RuntimeConfig",
    "derive_index_ids",
    "load_role_config",
    "load_runtime_config",
]
