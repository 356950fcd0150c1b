"""Configuration schema and YAML loading."""

from vaultpilot.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config, save_config
from vaultpilot.config.schema import (
    BootstrapConfig,
    ClusterConfig,
    ConsulConfig,
    EngineConfig,
    NodeConfig,
    RolloutConfig,
    TransportConfig,
    VaultPilotConfig,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "BootstrapConfig",
    "ClusterConfig",
    "ConfigError",
    "ConsulConfig",
    "EngineConfig",
    "NodeConfig",
    "RolloutConfig",
    "TransportConfig",
    "VaultPilotConfig",
    "load_config",
    "save_config",
]
