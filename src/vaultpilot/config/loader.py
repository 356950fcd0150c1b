"""Configuration loading and saving.

Paths set in a config file (``shares_dir``, ``cluster.transport.local_root``
and ``engine.ca_cert``) may be relative; they are resolved against the
directory holding the file after ``~`` expansion.  Paths left at their
defaults stay relative to the working directory.
"""

from pathlib import Path

import yaml
from pydantic import ValidationError

from vaultpilot.config.schema import VaultPilotConfig

DEFAULT_CONFIG_PATH = Path.home() / ".vaultpilot" / "vaultpilot.yaml"


class ConfigError(Exception):
    """Configuration loading or validation error."""


def _anchor(value: str | None, base: Path) -> str | None:
    if not value:
        return value
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return str(path)


def _resolve_paths(config: VaultPilotConfig, base: Path) -> VaultPilotConfig:
    """Anchor the relative paths the file set explicitly at *base*."""
    transport = config.cluster.transport
    if "local_root" in transport.model_fields_set:
        transport = transport.model_copy(
            update={"local_root": _anchor(transport.local_root, base)}
        )

    engine = config.engine
    if "ca_cert" in engine.model_fields_set:
        engine = engine.model_copy(update={"ca_cert": _anchor(engine.ca_cert, base)})

    update = {
        "cluster": config.cluster.model_copy(update={"transport": transport}),
        "engine": engine,
    }
    if "shares_dir" in config.model_fields_set:
        update["shares_dir"] = _anchor(config.shares_dir, base)
    return config.model_copy(update=update)


def load_config(path: Path | str | None = None) -> VaultPilotConfig:
    """Load and validate vaultpilot configuration from a YAML file.

    Args:
        path: Config file; defaults to ``~/.vaultpilot/vaultpilot.yaml``.
            A missing file means zero-config defaults.

    Returns:
        Validated configuration with file-relative paths resolved

    Raises:
        ConfigError: If the file exists but is unreadable or invalid
    """
    path = Path(path).expanduser() if path is not None else DEFAULT_CONFIG_PATH

    # Zero-config mode: three local nodes, Vault engine, docker transport
    if not path.exists():
        return VaultPilotConfig()

    try:
        with open(path) as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    if config_data is None:
        return VaultPilotConfig()
    if not isinstance(config_data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")

    try:
        config = VaultPilotConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e

    return _resolve_paths(config, path.resolve().parent)


def save_config(config: VaultPilotConfig, path: Path | str | None = None) -> Path:
    """Write *config* as YAML, creating parent directories.

    Args:
        config: Configuration to save
        path: Destination; defaults to ``~/.vaultpilot/vaultpilot.yaml``

    Returns:
        Path written
    """
    path = Path(path).expanduser() if path is not None else DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json", exclude_none=True),
            f,
            default_flow_style=False,
            sort_keys=False,
        )
    return path
