"""In-memory secret engine for local simulation.

Mimics an HA Vault cluster: all node views share one storage barrier
(initialized once, one master key, one policy table) while seal state is
tracked per node.  A node unseals only after it has received *threshold*
distinct valid shares; restarting a node reseals it.

Shares are encrypted for RSA recipient identities with RSA-OAEP, so the
full operator workflow (init, distribute, decrypt, unseal) runs without
Vault, Consul or gpg.  NOT SECURE - the optional state file holds unseal
progress in the clear.  Only use it for demos and tests.
"""

import hashlib
import json
import logging
import secrets
from pathlib import Path

from pydantic import BaseModel, Field

from vaultpilot.crypto.keys import encrypt_for
from vaultpilot.engine.base import InitResult, SecretEngine
from vaultpilot.engine.shamir import ShamirConfig, ShamirSecretSharing, Share
from vaultpilot.errors import AlreadyInitialized, EngineError
from vaultpilot.models import RecipientIdentity, SealStatus

logger = logging.getLogger(__name__)


class _NodeSeal(BaseModel):
    sealed: bool = True
    pending: list[str] = Field(default_factory=list)


class _Barrier(BaseModel):
    initialized: bool = False
    share_count: int = 0
    threshold: int = 0
    master_digest: str | None = None
    root_token: str | None = None
    policies: dict[str, str] = Field(default_factory=dict)
    nodes: dict[int, _NodeSeal] = Field(default_factory=dict)


class InMemoryCluster:
    """Shared storage for N simulated nodes.

    Example:
        >>> cluster = InMemoryCluster(size=3)
        >>> engine = cluster.node(1)
    """

    def __init__(self, size: int = 3, state_path: str | Path | None = None):
        """Create or load a simulated cluster.

        Args:
            size: Number of nodes
            state_path: JSON file persisting the simulation between runs
        """
        self.size = size
        self.state_path = Path(state_path).expanduser() if state_path else None
        self._barrier = self._load()
        for index in range(1, size + 1):
            self._barrier.nodes.setdefault(index, _NodeSeal())

    def _load(self) -> _Barrier:
        if self.state_path and self.state_path.exists():
            return _Barrier.model_validate_json(self.state_path.read_text())
        return _Barrier()

    def _save(self) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(json.dumps(self._barrier.model_dump(mode="json"), indent=2))

    def node(self, index: int, token: str | None = None) -> "InMemorySecretEngine":
        """Engine view for node *index*."""
        if index not in self._barrier.nodes:
            raise ValueError(f"Node {index} not found")
        return InMemorySecretEngine(self, index, token=token)

    def restart(self, index: int) -> None:
        """Simulate a process restart: the node comes back sealed."""
        self._barrier.nodes[index] = _NodeSeal()
        self._save()
        logger.info("Simulated restart of node %d (sealed)", index)

    @property
    def policies(self) -> dict[str, str]:
        return dict(self._barrier.policies)

    def _status(self, index: int) -> SealStatus:
        barrier = self._barrier
        node = barrier.nodes[index]
        return SealStatus(
            sealed=node.sealed,
            threshold=barrier.threshold,
            share_count=barrier.share_count,
            progress=len(node.pending),
            initialized=barrier.initialized,
        )

    def _initialize(self, identities: list[RecipientIdentity], threshold: int) -> InitResult:
        barrier = self._barrier
        if barrier.initialized:
            raise AlreadyInitialized("Vault is already initialized", step="init")

        master_key = secrets.token_bytes(32)
        sss = ShamirSecretSharing(ShamirConfig(threshold=threshold, total_shares=len(identities)))
        shares = sss.split(master_key)

        try:
            keys = [
                encrypt_for(identity, share.encode().encode("utf-8")).hex()
                for identity, share in zip(identities, shares, strict=True)
            ]
        except ValueError as e:
            raise EngineError(str(e), step="init") from e

        barrier.initialized = True
        barrier.share_count = len(identities)
        barrier.threshold = threshold
        barrier.master_digest = hashlib.sha256(master_key).hexdigest()
        barrier.root_token = "s." + secrets.token_urlsafe(18)
        self._save()

        logger.info("Simulated vault initialized (%d shares, threshold=%d)", len(keys), threshold)
        return InitResult(keys=keys, root_token=barrier.root_token)

    def _unseal(self, index: int, share_text: str) -> SealStatus:
        barrier = self._barrier
        if not barrier.initialized:
            raise EngineError("Vault is not initialized", node=index, step="unseal")

        node = barrier.nodes[index]
        if not node.sealed:
            return self._status(index)

        try:
            share = Share.decode(share_text)
        except ValueError as e:
            raise EngineError("invalid key", node=index, step="unseal") from e

        encoded = share.encode()
        if encoded in node.pending:
            return self._status(index)

        node.pending.append(encoded)
        if len(node.pending) >= barrier.threshold:
            sss = ShamirSecretSharing(
                ShamirConfig(threshold=barrier.threshold, total_shares=barrier.share_count)
            )
            pending = [Share.decode(s) for s in node.pending]
            node.pending = []
            try:
                candidate = sss.combine(pending)
            except ValueError:
                candidate = b""
            if hashlib.sha256(candidate).hexdigest() != barrier.master_digest:
                self._save()
                raise EngineError("unseal failed, invalid key", node=index, step="unseal")
            node.sealed = False
            logger.info("Simulated node %d unsealed", index)

        self._save()
        return self._status(index)

    def _write_policy(self, token: str | None, name: str, document: str) -> None:
        if not self._barrier.initialized or token != self._barrier.root_token:
            raise EngineError("permission denied", step="policy")
        self._barrier.policies[name] = document
        self._save()


class InMemorySecretEngine(SecretEngine):
    """One node's view of an :class:`InMemoryCluster`."""

    def __init__(self, cluster: InMemoryCluster, index: int, token: str | None = None):
        self.cluster = cluster
        self.index = index
        self.token = token

    async def is_initialized(self) -> bool:
        return self.cluster._barrier.initialized

    async def initialize(self, identities: list[RecipientIdentity], threshold: int) -> InitResult:
        return self.cluster._initialize(identities, threshold)

    async def seal_status(self) -> SealStatus:
        return self.cluster._status(self.index)

    async def unseal(self, share: str) -> SealStatus:
        return self.cluster._unseal(self.index, share)

    async def write_policy(self, name: str, document: str) -> None:
        if self.cluster._barrier.nodes[self.index].sealed:
            raise EngineError("Vault is sealed", node=self.index, step="policy")
        self.cluster._write_policy(self.token, name, document)
