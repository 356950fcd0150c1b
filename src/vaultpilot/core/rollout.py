"""Secure rollout: gossip encryption and TLS for every node.

The rollout is deliberately not transactional across nodes.  Material is
pushed to node 1, then node 2, and so on; a failure part way leaves the
earlier nodes updated and the later ones untouched.  Idempotence replaces
atomicity: each node carries two manifests,

- ``pending.json`` - material delivered but not yet applied
- ``manifest.json`` - material applied by a restart

so re-running with the same material skips delivery to nodes that already
hold it and restarts only nodes that have not applied it yet.  A node is
finished only when both manifests match the target; a stale ``pending.json``
means other material sits on disk and is overwritten.
"""

import json
import logging
import posixpath
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from vaultpilot.config.schema import RolloutConfig
from vaultpilot.crypto.tls import validate_tls_material
from vaultpilot.errors import MissingMaterial, TransportError, VaultPilotError
from vaultpilot.models import ClusterNode, SecureConfig
from vaultpilot.transport.base import NodeTransport

logger = logging.getLogger(__name__)

PENDING_MANIFEST = "pending.json"
ACTIVE_MANIFEST = "manifest.json"


class Manifest(BaseModel):
    """Version marker stored on a node."""

    version: int
    fingerprint: str


class NodeRolloutResult(BaseModel):
    node: int
    delivered: bool = False
    restarted: bool = False
    version: int = 0


class RolloutReport(BaseModel):
    """Per-node outcome of a rollout, in node order."""

    version: int = 0
    fingerprint: str = ""
    gossip_generated: bool = False
    nodes: list[NodeRolloutResult] = Field(default_factory=list)

    @property
    def restarts(self) -> int:
        return sum(1 for n in self.nodes if n.restarted)


class NodeVersion(BaseModel):
    node: int
    version: int = 0
    fingerprint: str | None = None
    pending_version: int | None = None


class ReconciliationReport(BaseModel):
    """Secure-config versions across the cluster."""

    nodes: list[NodeVersion] = Field(default_factory=list)

    @property
    def target_version(self) -> int:
        return max((n.version for n in self.nodes), default=0)

    @property
    def lagging(self) -> list[int]:
        """Nodes behind the target, disagreeing on material, or with unapplied files on disk."""
        target = self.target_version
        fingerprints = {n.fingerprint for n in self.nodes if n.version == target}
        return [
            n.node
            for n in self.nodes
            if n.version < target
            or (len(fingerprints) > 1 and n.version == target)
            or n.pending_version is not None
        ]

    @property
    def converged(self) -> bool:
        return self.target_version > 0 and not self.lagging


class SecureRolloutManager:
    """Pushes a :class:`SecureConfig` to every node and applies it."""

    def __init__(
        self,
        nodes: list[ClusterNode],
        transport: NodeTransport,
        config: RolloutConfig | None = None,
    ):
        self.nodes = sorted(nodes, key=lambda n: n.index)
        self.transport = transport
        self.config = config or RolloutConfig()

    def _remote(self, name: str) -> str:
        return posixpath.join(self.config.remote_dir, name)

    async def _read_manifest(self, node: ClusterNode, name: str) -> Manifest | None:
        try:
            raw = await self.transport.read_file(node, self._remote(name))
        except TransportError as e:
            logger.warning("Cannot read %s on node %d: %s", name, node.index, e)
            return None
        if not raw:
            return None
        try:
            return Manifest.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring malformed %s on node %d", name, node.index)
            return None

    async def generate_gossip_key(self) -> str:
        """Ask the first live node for a fresh gossip key.

        This is the last call made over the unencrypted channel.

        Raises:
            TransportError: If no node can generate one
        """
        errors = []
        for node in self.nodes:
            try:
                key = (await self.transport.exec(node, ["consul", "keygen"])).strip()
            except TransportError as e:
                errors.append(str(e))
                continue
            if key:
                logger.info("Generated gossip key on node %d", node.index)
                return key
        raise TransportError(
            f"No node could generate a gossip key: {'; '.join(errors)}", step="keygen"
        )

    async def _existing_gossip_key(
        self,
        active: dict[int, Manifest | None],
        pending: dict[int, Manifest | None],
    ) -> str | None:
        """Find the gossip key already installed on the cluster.

        Nodes whose files on disk match their applied manifest are asked
        first, highest version first, so an interrupted rollout of other
        material is not picked up by accident.
        """

        def rank(node: ClusterNode) -> tuple[bool, int]:
            applied = active[node.index]
            settled = pending[node.index] in (None, applied)
            return settled, applied.version if applied else 0

        for node in sorted(self.nodes, key=rank, reverse=True):
            try:
                raw = await self.transport.read_file(node, self.config.consul_config)
            except TransportError as e:
                logger.warning("Cannot read Consul config on node %d: %s", node.index, e)
                continue
            if not raw:
                continue
            try:
                key = json.loads(raw).get("encrypt")
            except (json.JSONDecodeError, AttributeError):
                logger.warning("Ignoring malformed Consul config on node %d", node.index)
                continue
            if key:
                logger.info("Reusing gossip key installed on node %d", node.index)
                return key
        return None

    def _render(self, secure: SecureConfig, manifest: Manifest, staging: Path) -> list[tuple[Path, str]]:
        """Write the node files into *staging*; returns (local, remote) pairs in delivery order."""
        files: dict[str, str] = {
            "cert.pem": secure.tls_cert,
            "key.pem": secure.tls_key,
        }
        if secure.ca_cert:
            files["ca.pem"] = secure.ca_cert

        verify = secure.ca_cert is not None
        consul = {
            "encrypt": secure.gossip_key,
            "cert_file": self._remote("cert.pem"),
            "key_file": self._remote("key.pem"),
            "verify_incoming": verify,
            "verify_outgoing": verify,
        }
        tcp = {
            "address": "0.0.0.0:8200",
            "tls_cert_file": self._remote("cert.pem"),
            "tls_key_file": self._remote("key.pem"),
        }
        if secure.ca_cert:
            consul["ca_file"] = self._remote("ca.pem")
            tcp["tls_client_ca_file"] = self._remote("ca.pem")

        pairs: list[tuple[Path, str]] = []
        for name, content in files.items():
            local = staging / name
            local.write_text(content)
            pairs.append((local, self._remote(name)))

        consul_local = staging / "consul.json"
        consul_local.write_text(json.dumps(consul, indent=2))
        pairs.append((consul_local, self.config.consul_config))

        vault_local = staging / "vault.json"
        vault_local.write_text(json.dumps({"listener": {"tcp": tcp}}, indent=2))
        pairs.append((vault_local, self.config.vault_config))

        pending = staging / PENDING_MANIFEST
        pending.write_text(manifest.model_dump_json())
        pairs.append((pending, self._remote(PENDING_MANIFEST)))
        return pairs

    async def secure(
        self,
        tls_key: str | None,
        tls_cert: str | None,
        ca_cert: str | None = None,
        gossip_key: str | None = None,
    ) -> RolloutReport:
        """Roll out gossip encryption and TLS to every node.

        Args:
            tls_key: PEM private key
            tls_cert: PEM certificate
            ca_cert: PEM CA certificate; optional if the chain is already trusted
            gossip_key: Base64 gossip key; when omitted the key already installed
                on the cluster is reused, or a node generates one

        Returns:
            Report with the resulting version and per-node actions

        Raises:
            MissingMaterial: Certificate or key absent or invalid (nothing touched)
            DeliveryFailed: With ``node`` and ``partial`` set
            RestartFailed: With ``node`` and ``partial`` set
        """
        if not tls_cert or not tls_key:
            raise MissingMaterial(
                "Both --tls-cert and --tls-key are required to secure the cluster", step="secure"
            )
        validate_tls_material(tls_cert, tls_key, ca_cert)

        active: dict[int, Manifest | None] = {}
        pending: dict[int, Manifest | None] = {}
        for node in self.nodes:
            active[node.index] = await self._read_manifest(node, ACTIVE_MANIFEST)
            pending[node.index] = await self._read_manifest(node, PENDING_MANIFEST)

        report = RolloutReport()
        if not gossip_key:
            gossip_key = await self._existing_gossip_key(active, pending)
        if not gossip_key:
            gossip_key = await self.generate_gossip_key()
            report.gossip_generated = True

        secure = SecureConfig(
            gossip_key=gossip_key, tls_cert=tls_cert, tls_key=tls_key, ca_cert=ca_cert
        )
        fingerprint = secure.fingerprint

        highest = max(
            (m for m in active.values() if m is not None),
            key=lambda m: m.version,
            default=None,
        )
        if highest is None:
            secure.version = 1
        elif highest.fingerprint == fingerprint:
            secure.version = highest.version
        else:
            secure.version = highest.version + 1

        report.version = secure.version
        report.fingerprint = fingerprint
        target = Manifest(version=secure.version, fingerprint=fingerprint)

        needs_restart: list[ClusterNode] = []
        with tempfile.TemporaryDirectory(prefix="vaultpilot-") as tmp:
            files = self._render(secure, target, Path(tmp))

            for node in self.nodes:
                result = NodeRolloutResult(node=node.index)
                report.nodes.append(result)

                applied = active[node.index] == target
                held = pending[node.index] in ((None, target) if applied else (target,))
                if applied:
                    result.version = target.version
                    node.config_version = target.version
                else:
                    needs_restart.append(node)
                if held:
                    logger.info("Node %d already holds version %d", node.index, target.version)
                    continue
                if applied:
                    logger.warning(
                        "Node %d holds unapplied material on disk; restoring version %d",
                        node.index,
                        target.version,
                    )

                for local, remote in files:
                    try:
                        await self.transport.deliver(node, local, remote)
                    except VaultPilotError as e:
                        e.node = node.index
                        e.partial = report
                        raise
                result.delivered = True
                logger.info("Delivered secure config v%d to node %d", target.version, node.index)

            manifest_file = Path(tmp) / ACTIVE_MANIFEST
            manifest_file.write_text(target.model_dump_json())

            for node in needs_restart:
                result = report.nodes[self.nodes.index(node)]
                try:
                    await self.transport.restart(node)
                    await self.transport.deliver(node, manifest_file, self._remote(ACTIVE_MANIFEST))
                except VaultPilotError as e:
                    e.node = node.index
                    e.partial = report
                    raise
                result.restarted = True
                result.version = target.version
                node.config_version = target.version

        logger.info(
            "Secure config v%d rolled out (%d restarts)", report.version, report.restarts
        )
        return report

    async def reconcile(self) -> ReconciliationReport:
        """Read every node's installed version.

        Returns:
            Report whose ``converged`` is true only when all nodes run the
            same non-zero version with the same material
        """
        report = ReconciliationReport()
        for node in self.nodes:
            active = await self._read_manifest(node, ACTIVE_MANIFEST)
            pending = await self._read_manifest(node, PENDING_MANIFEST)
            entry = NodeVersion(node=node.index)
            if active:
                entry.version = active.version
                entry.fingerprint = active.fingerprint
            if pending and pending != active:
                entry.pending_version = pending.version
            node.config_version = entry.version
            report.nodes.append(entry)

        if report.converged:
            logger.info("All nodes at secure config v%d", report.target_version)
        else:
            logger.warning(
                "Secure config diverged: target v%d, lagging nodes %s",
                report.target_version,
                report.lagging,
            )
        return report
