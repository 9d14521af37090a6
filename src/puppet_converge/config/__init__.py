"""Node configuration loading and schema."""
from .schema import (
    NodeConfig,
    HostConfig,
    AgentConfig,
    MasterConfig,
    PassengerConfig,
    StoreConfigsConfig,
    SqliteAdapter,
    MySQLAdapter,
    AdapterConfig,
    ADAPTERS,
)
from .loader import ConfigLoader, ConfigError, apply_overrides, load_node_config

__all__ = [
    "NodeConfig",
    "HostConfig",
    "AgentConfig",
    "MasterConfig",
    "PassengerConfig",
    "StoreConfigsConfig",
    "SqliteAdapter",
    "MySQLAdapter",
    "AdapterConfig",
    "ADAPTERS",
    "ConfigLoader",
    "ConfigError",
    "apply_overrides",
    "load_node_config",
]
