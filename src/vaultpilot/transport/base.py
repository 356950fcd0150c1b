"""Artifact delivery and restart contracts.

Copying files onto running nodes and restarting them is plumbing; the core
only needs these capabilities, always applied to one node at a time.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from vaultpilot.models import ClusterNode


class NodeTransport(ABC):
    """Per-node file delivery, command execution and restart."""

    @abstractmethod
    async def deliver(self, node: ClusterNode, local_path: Path, remote_path: str) -> None:
        """Copy *local_path* to *remote_path* on *node*.

        Raises:
            DeliveryFailed: If the copy fails
        """

    @abstractmethod
    async def restart(self, node: ClusterNode) -> None:
        """Restart the node's processes.

        Raises:
            RestartFailed: If the restart fails
        """

    @abstractmethod
    async def exec(self, node: ClusterNode, argv: list[str]) -> str:
        """Run a command on *node* and return its stdout.

        Raises:
            TransportError: If the command cannot run or exits non-zero
        """

    @abstractmethod
    async def read_file(self, node: ClusterNode, remote_path: str) -> str | None:
        """Contents of *remote_path* on *node*, or ``None`` if it does not exist."""


class ClusterLauncher(ABC):
    """Stands up the node instances."""

    @abstractmethod
    async def launch(self, count: int) -> None:
        """Start *count* node instances (idempotent)."""
