"""Cluster bootstrap sequencing.

Orders the whole first-boot workflow::

    launch -> quorum -> [secure] -> init (split + distribute) -> unseal -> policy

Each step assumes the postconditions of the previous one.  Any failure
aborts the sequence with a :class:`BootstrapFailed` naming the step;
completed steps are not rolled back.  Every step is safe to re-run on its
own through the CLI.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from vaultpilot.config.schema import VaultPilotConfig
from vaultpilot.consensus import ConsensusBackend, ConsensusStatus
from vaultpilot.core.distribution import (
    DistributionReport,
    KeyDistributionManager,
    ShareStore,
    read_root_credential,
    write_root_credential,
)
from vaultpilot.core.rollout import RolloutReport, SecureRolloutManager
from vaultpilot.core.splitter import ThresholdShareSplitter
from vaultpilot.core.unseal import UnsealCoordinator, UnsealReport
from vaultpilot.crypto.decrypt import ShareDecryptor
from vaultpilot.engine.base import SecretEngine
from vaultpilot.errors import (
    BootstrapFailed,
    ConsensusError,
    QuorumTimeout,
    VaultPilotError,
)
from vaultpilot.models import ClusterNode, RecipientIdentity, RootCredential
from vaultpilot.transport.base import ClusterLauncher, NodeTransport

logger = logging.getLogger(__name__)

EngineFactory = Callable[[ClusterNode, str | None], SecretEngine]


class BootstrapStep(StrEnum):
    LAUNCH = "launch"
    QUORUM = "quorum"
    SECURE = "secure"
    INIT = "init"
    UNSEAL = "unseal"
    POLICY = "policy"


class SecureMaterial(BaseModel):
    """TLS and gossip material for the optional secure step."""

    tls_key: str
    tls_cert: str
    ca_cert: str | None = None
    gossip_key: str | None = None


class BootstrapReport(BaseModel):
    """What a bootstrap run completed.  Never holds shares or the root token."""

    completed: list[BootstrapStep] = Field(default_factory=list)
    quorum: ConsensusStatus | None = None
    rollout: RolloutReport | None = None
    threshold: int = 0
    distribution: DistributionReport | None = None
    unseal: list[UnsealReport] = Field(default_factory=list)
    policies: list[str] = Field(default_factory=list)

    @property
    def unsealed(self) -> bool:
        return bool(self.unseal) and self.unseal[-1].complete


async def wait_for_quorum(
    consensus: ConsensusBackend,
    expected_peers: int,
    timeout: float = 300.0,
    initial_delay: float = 1.0,
    max_delay: float = 16.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ConsensusStatus:
    """Poll the consensus backend until *expected_peers* peers are visible.

    The poll interval doubles from *initial_delay* up to *max_delay*.  An
    unreachable backend counts as "not yet".

    Args:
        consensus: Backend to poll
        expected_peers: Peers other than the answering node (N - 1)
        timeout: Total seconds of waiting before giving up
        initial_delay: First poll interval
        max_delay: Upper bound for the poll interval
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        The status that satisfied the quorum

    Raises:
        QuorumTimeout: If the quorum has not formed within *timeout*
    """
    delay = initial_delay
    waited = 0.0
    last: ConsensusStatus | None = None

    while True:
        try:
            last = await consensus.status()
        except ConsensusError as e:
            logger.debug("Consensus status unavailable: %s", e)
        else:
            if last.peer_count >= expected_peers:
                logger.info("Quorum formed: %d peers visible", last.peer_count)
                return last
            logger.info("Waiting for quorum: %d/%d peers", last.peer_count, expected_peers)

        if waited >= timeout:
            seen = last.peer_count if last else 0
            raise QuorumTimeout(
                f"Quorum not formed after {waited:.0f}s ({seen}/{expected_peers} peers)",
                step=BootstrapStep.QUORUM,
                partial=last,
            )
        step = min(delay, timeout - waited)
        await sleep(step)
        waited += step
        delay = min(delay * 2, max_delay)


async def initialize_cluster(
    engine: SecretEngine,
    consensus: ConsensusBackend,
    store: ShareStore,
    identities: list[RecipientIdentity],
    threshold: int | None = None,
    kv_prefix: str = "vaultpilot",
) -> tuple[int, DistributionReport]:
    """Split and distribute under the cluster-wide init lock.

    Writes one artifact per recipient and the root credential record, then
    a non-secret marker (threshold and recipient fingerprints) to the
    consensus KV store.

    Returns:
        Tuple of (effective threshold, distribution report)

    Raises:
        LockUnavailable: Another operator is initializing
        InvalidThreshold, AlreadyInitialized, ShareCountMismatch, DistributionFailed
    """
    async with consensus.lock(f"{kv_prefix}/init"):
        secret = await ThresholdShareSplitter(engine).initialize(identities, threshold)
        recipients = [share.recipient.fingerprint for share in secret.shares]

        report = KeyDistributionManager(store).distribute(secret.shares)
        write_root_credential(
            store,
            RootCredential(
                token=secret.root_credential,
                share_count=secret.share_count,
                threshold=secret.threshold,
                recipients=recipients,
            ),
        )
        effective = secret.threshold
        del secret

        marker = {
            "initialized_at": datetime.utcnow().isoformat(),
            "share_count": len(recipients),
            "threshold": effective,
            "recipients": recipients,
        }
        await consensus.write(f"{kv_prefix}/initialized", json.dumps(marker))
    return effective, report


class ClusterBootstrapSequencer:
    """Runs the first-boot workflow end to end."""

    def __init__(
        self,
        nodes: list[ClusterNode],
        launcher: ClusterLauncher,
        consensus: ConsensusBackend,
        transport: NodeTransport,
        engine_factory: EngineFactory,
        store: ShareStore,
        config: VaultPilotConfig | None = None,
    ):
        """Initialize the sequencer.

        Args:
            nodes: Cluster nodes
            launcher: Starts the node instances
            consensus: Consensus backend (quorum signal, init lock, KV marker)
            transport: Node transport for the secure rollout
            engine_factory: Builds an engine client for a node and token
            store: Where share artifacts and the root credential record go
            config: Configuration (defaults when omitted)
        """
        self.nodes = sorted(nodes, key=lambda n: n.index)
        self.launcher = launcher
        self.consensus = consensus
        self.transport = transport
        self.engine_factory = engine_factory
        self.store = store
        self.config = config or VaultPilotConfig()
        self.report = BootstrapReport()

    @contextlib.asynccontextmanager
    async def _step(self, step: BootstrapStep) -> AsyncIterator[None]:
        logger.info("Bootstrap step: %s", step)
        try:
            yield
        except BootstrapFailed:
            raise
        except VaultPilotError as e:
            raise BootstrapFailed(
                f"Bootstrap aborted at {step}: {e}",
                node=e.node,
                step=step,
                partial=self.report,
            ) from e
        self.report.completed.append(step)

    async def _wait_for_quorum(self) -> None:
        settings = self.config.bootstrap
        self.report.quorum = await wait_for_quorum(
            self.consensus,
            expected_peers=len(self.nodes) - 1,
            timeout=settings.quorum_timeout,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
        )

    async def _initialize(
        self, identities: list[RecipientIdentity], threshold: int | None
    ) -> None:
        engine = self.engine_factory(self.nodes[0], None)
        try:
            self.report.threshold, self.report.distribution = await initialize_cluster(
                engine,
                self.consensus,
                self.store,
                identities,
                threshold,
                kv_prefix=self.config.consul.kv_prefix,
            )
        finally:
            await engine.close()

    async def _unseal(self, decryptors: dict[str, ShareDecryptor]) -> None:
        engines = {node.index: self.engine_factory(node, None) for node in self.nodes}
        try:
            for artifact in self.report.distribution.delivered:
                decryptor = decryptors.get(artifact.recipient)
                if decryptor is None:
                    logger.info("No decryptor for %s; their share is left to them", artifact.recipient)
                    continue
                coordinator = UnsealCoordinator(self.nodes, engines, decryptor)
                report = await coordinator.unseal_artifact(artifact.path)
                self.report.unseal.append(report)
                if report.complete:
                    break
        finally:
            for engine in engines.values():
                await engine.close()

        if not self.report.unsealed:
            logger.warning(
                "Cluster still sealed; the remaining operators must run 'vaultpilot unseal'"
            )

    async def _apply_policies(self, policies: dict[str, str]) -> None:
        record = read_root_credential(self.store)
        engine = self.engine_factory(self.nodes[0], record.token if record else None)
        try:
            for name, document in policies.items():
                await engine.write_policy(name, document)
                self.report.policies.append(name)
        finally:
            await engine.close()

    async def run(
        self,
        identities: list[RecipientIdentity],
        threshold: int | None = None,
        secure_material: SecureMaterial | None = None,
        decryptors: dict[str, ShareDecryptor] | None = None,
        policies: dict[str, str] | None = None,
        demo: bool = False,
    ) -> BootstrapReport:
        """Bootstrap the cluster.

        Args:
            identities: Recipient identities for the shares
            threshold: Shares needed to unseal; defaulted by policy
            secure_material: Run the secure rollout before init when given
            decryptors: Decryptor per recipient name, for the shares that
                can be unsealed here; the rest are left to their holders
            policies: Initial policy documents by name, applied once unsealed
            demo: Single-operator path; threshold forced to 1

        Returns:
            Report of the completed steps

        Raises:
            BootstrapFailed: With ``step`` naming the failed step
        """
        self.report = BootstrapReport()
        decryptors = decryptors or {}
        if demo:
            if len(identities) != 1:
                raise BootstrapFailed(
                    "The demo bootstrap takes exactly one identity",
                    step=BootstrapStep.INIT,
                    partial=self.report,
                )
            threshold = 1

        async with self._step(BootstrapStep.LAUNCH):
            await self.launcher.launch(len(self.nodes))

        async with self._step(BootstrapStep.QUORUM):
            await self._wait_for_quorum()

        if secure_material is not None:
            async with self._step(BootstrapStep.SECURE):
                manager = SecureRolloutManager(self.nodes, self.transport, self.config.rollout)
                self.report.rollout = await manager.secure(
                    secure_material.tls_key,
                    secure_material.tls_cert,
                    secure_material.ca_cert,
                    secure_material.gossip_key,
                )
                # restarted nodes have to find each other again
                if self.report.rollout.restarts:
                    await self._wait_for_quorum()

        async with self._step(BootstrapStep.INIT):
            await self._initialize(identities, threshold)

        async with self._step(BootstrapStep.UNSEAL):
            await self._unseal(decryptors)

        if policies:
            if not self.report.unsealed:
                logger.warning("Skipping policies: the cluster is not unsealed yet")
            else:
                async with self._step(BootstrapStep.POLICY):
                    await self._apply_policies(policies)

        logger.info("Bootstrap finished: %s", ", ".join(self.report.completed))
        return self.report
