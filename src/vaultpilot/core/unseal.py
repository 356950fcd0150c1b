"""Unseal coordination.

One call to :meth:`UnsealCoordinator.unseal` takes ONE operator's share,
decrypts it locally and submits it to every node in turn (1..N).  A full
unseal needs *threshold* distinct shares, i.e. *threshold* operators each
calling it once.

Per node::

    SEALED --share (progress < k)--> SEALED (partial)
    SEALED --share (progress == k)--> UNSEALED

UNSEALED is terminal until the node restarts.  Nodes unseal independently;
a cluster with some nodes sealed is degraded but valid.  Submitting a share
to an unsealed node, or the same share twice to a node, is a no-op.
"""

import hashlib
import logging
from pathlib import Path

from pydantic import BaseModel, Field

from vaultpilot.crypto.decrypt import ShareDecryptor
from vaultpilot.engine.base import SecretEngine
from vaultpilot.errors import DecryptionFailed, UnsealFailed, VaultPilotError
from vaultpilot.models import ClusterNode, SealState, SealStatus

logger = logging.getLogger(__name__)


class NodeUnsealResult(BaseModel):
    """Outcome of submitting one share to one node."""

    node: int
    state: SealState
    progress: int = 0
    threshold: int = 0
    applied: bool = False


class UnsealReport(BaseModel):
    """Per-node outcome of one unseal call, in node order."""

    results: list[NodeUnsealResult] = Field(default_factory=list)

    @property
    def unsealed(self) -> list[int]:
        return [r.node for r in self.results if r.state == SealState.UNSEALED]

    @property
    def sealed(self) -> list[int]:
        return [r.node for r in self.results if r.state != SealState.UNSEALED]

    @property
    def complete(self) -> bool:
        return bool(self.results) and not self.sealed


class UnsealSession:
    """Tracks, per node, which shares the current attempt has applied.

    Only digests of shares are kept, never the shares themselves.
    """

    def __init__(self, nodes: list[ClusterNode]):
        self._applied: dict[int, set[str]] = {node.index: set() for node in nodes}
        self._status: dict[int, SealStatus] = {}

    @staticmethod
    def digest(share: str) -> str:
        return hashlib.sha256(share.encode("utf-8")).hexdigest()

    def already_applied(self, node: int, share: str) -> bool:
        return self.digest(share) in self._applied[node]

    def record(self, node: int, share: str, status: SealStatus) -> None:
        self._applied[node].add(self.digest(share))
        self.observe(node, status)

    def observe(self, node: int, status: SealStatus) -> None:
        self._status[node] = status
        if not status.sealed:
            self._applied[node].clear()

    def progress(self, node: int) -> int:
        status = self._status.get(node)
        return status.progress if status else 0

    def state(self, node: int) -> SealState:
        status = self._status.get(node)
        return status.state if status else SealState.UNKNOWN

    @property
    def is_complete(self) -> bool:
        return all(self.state(node) == SealState.UNSEALED for node in self._applied)


class UnsealCoordinator:
    """Drives every node from sealed to unsealed."""

    def __init__(
        self,
        nodes: list[ClusterNode],
        engines: dict[int, SecretEngine],
        decryptor: ShareDecryptor | None = None,
    ):
        """Initialize the coordinator.

        Args:
            nodes: Cluster nodes, any order (processed by index)
            engines: Engine client per node index
            decryptor: Operator's decryptor; required for :meth:`unseal_artifact`
        """
        self.nodes = sorted(nodes, key=lambda n: n.index)
        self.engines = engines
        self.decryptor = decryptor
        self.session = UnsealSession(self.nodes)

    async def unseal_artifact(self, artifact: str | Path) -> UnsealReport:
        """Decrypt an encrypted-share file and apply it to all nodes.

        Raises:
            DecryptionFailed: Missing file, or the operator's key cannot decrypt it
            UnsealFailed: A node rejected the share or could not be reached
        """
        if self.decryptor is None:
            raise DecryptionFailed("No decryptor configured", step="decrypt")

        path = Path(artifact)
        if not path.is_file():
            raise DecryptionFailed(f"{path} not found.", step="decrypt")

        logger.info("Decrypting key. You may be prompted for your key password...")
        share = await self.decryptor.decrypt(path.read_text())
        return await self.unseal(share)

    async def unseal(self, share: str) -> UnsealReport:
        """Submit one decrypted share to node 1..N.

        Args:
            share: Decrypted share value

        Returns:
            Per-node results

        Raises:
            UnsealFailed: With ``node`` set and ``partial`` holding the
                results for the nodes already processed
        """
        report = UnsealReport()

        for node in self.nodes:
            engine = self.engines[node.index]
            try:
                status = await engine.seal_status()
                self.session.observe(node.index, status)

                applied = False
                if status.sealed and not self.session.already_applied(node.index, share):
                    status = await engine.unseal(share)
                    self.session.record(node.index, share, status)
                    applied = True
            except VaultPilotError as e:
                node.seal_state = SealState.UNKNOWN
                raise UnsealFailed(
                    f"Unseal of node {node.index} failed: {e}",
                    node=node.index,
                    step="unseal",
                    partial=report,
                ) from e

            node.seal_state = status.state
            report.results.append(
                NodeUnsealResult(
                    node=node.index,
                    state=status.state,
                    progress=status.progress,
                    threshold=status.threshold,
                    applied=applied,
                )
            )
            logger.info(
                "Node %d: %s (progress %d/%d)",
                node.index,
                status.state,
                status.progress,
                status.threshold,
            )

        if self.session.is_complete:
            logger.info("All %d nodes unsealed", len(self.nodes))
            self.session = UnsealSession(self.nodes)

        return report

    async def seal_status(self) -> dict[int, SealStatus | None]:
        """Read-only sweep of every node; unreachable nodes map to ``None``."""
        statuses: dict[int, SealStatus | None] = {}
        for node in self.nodes:
            try:
                status = await self.engines[node.index].seal_status()
            except VaultPilotError as e:
                logger.warning("Node %d seal status unavailable: %s", node.index, e)
                node.seal_state = SealState.UNKNOWN
                statuses[node.index] = None
                continue
            node.seal_state = status.state
            statuses[node.index] = status
        return statuses
