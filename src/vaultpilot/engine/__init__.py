"""Secret-storage engine clients."""

from typing import Any

from vaultpilot.engine.base import InitResult, SecretEngine
from vaultpilot.engine.memory import InMemoryCluster, InMemorySecretEngine
from vaultpilot.engine.vault import HashiCorpVaultEngine


def create_engine(provider: str = "vault", **kwargs: Any) -> SecretEngine:
    """Create an engine client for one node.

    Args:
        provider: Engine type (vault, memory)
        kwargs: Engine-specific configuration; ``memory`` needs ``cluster``
            and ``index``

    Returns:
        SecretEngine instance

    Raises:
        ValueError: If provider is unknown
    """
    if provider == "vault":
        return HashiCorpVaultEngine(**kwargs)
    elif provider == "memory":
        cluster = kwargs.pop("cluster")
        return cluster.node(**kwargs)
    else:
        raise ValueError(f"Unknown engine provider: {provider}. Use 'vault' or 'memory'")


__all__ = [
    "HashiCorpVaultEngine",
    "InMemoryCluster",
    "InMemorySecretEngine",
    "InitResult",
    "SecretEngine",
    "create_engine",
]
