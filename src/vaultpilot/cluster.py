"""Wiring of engines, transport and consensus backend from configuration.

Two modes:

- live: Vault HTTP API per node, Consul on node 1, docker transport
- simulation (``--local`` or ``engine.provider: memory``): in-memory engine,
  one directory per node, in-process consensus; state survives between
  CLI invocations in ``<local_root>/engine.json``
"""

import logging
from pathlib import Path

from vaultpilot.config.schema import VaultPilotConfig
from vaultpilot.consensus import ConsensusBackend, ConsulBackend, LocalConsensus
from vaultpilot.core.distribution import ShareStore
from vaultpilot.engine import InMemoryCluster, SecretEngine, create_engine
from vaultpilot.models import ClusterNode
from vaultpilot.transport import (
    ClusterLauncher,
    ComposeLauncher,
    DockerTransport,
    LocalLauncher,
    LocalTransport,
    NodeTransport,
)

logger = logging.getLogger(__name__)

ENGINE_STATE_FILE = "engine.json"


class Cluster:
    """Runtime components for one configured cluster."""

    def __init__(self, config: VaultPilotConfig, local: bool = False):
        """Build the components.

        Args:
            config: Loaded configuration
            local: Force simulation mode
        """
        self.config = config
        self.simulated = local or config.engine.provider == "memory"
        self.nodes: list[ClusterNode] = config.cluster.cluster_nodes()
        self.store = ShareStore(Path(config.shares_dir).expanduser())
        self._engines: list[SecretEngine] = []

        transport_config = config.cluster.transport
        names = [node.name for node in self.nodes]

        if self.simulated:
            root = Path(transport_config.local_root).expanduser()
            self.memory: InMemoryCluster | None = InMemoryCluster(
                size=len(self.nodes), state_path=root / ENGINE_STATE_FILE
            )
            self.transport: NodeTransport = LocalTransport(root, on_restart=self.memory.restart)
            local_launcher = LocalLauncher(root, names)
            self.launcher: ClusterLauncher = local_launcher
            self.consensus: ConsensusBackend = LocalConsensus(local_launcher.members_up)
            logger.info("Simulation mode, nodes under %s", root)
        else:
            self.memory = None
            if transport_config.method == "local":
                root = Path(transport_config.local_root).expanduser()
                self.transport = LocalTransport(root)
                self.launcher = LocalLauncher(root, names)
            else:
                self.transport = DockerTransport(timeout=transport_config.command_timeout)
                self.launcher = ComposeLauncher(
                    compose_file=transport_config.compose_file,
                    service=transport_config.service,
                    project=transport_config.project,
                    timeout=transport_config.command_timeout,
                )
            self.consensus = ConsulBackend(
                consul_addr=self.nodes[0].consul_address,
                timeout=config.consul.timeout,
                lock_ttl=config.consul.lock_ttl,
            )

    def node(self, index: int) -> ClusterNode:
        for node in self.nodes:
            if node.index == index:
                return node
        raise ValueError(f"Node {index} not in cluster (1..{len(self.nodes)})")

    def engine(self, node: ClusterNode, token: str | None = None) -> SecretEngine:
        """Engine client for *node*, closed by :meth:`close`."""
        if self.memory is not None:
            engine = create_engine("memory", cluster=self.memory, index=node.index, token=token)
        else:
            engine = create_engine(
                "vault",
                vault_addr=node.address,
                vault_token=token,
                vault_namespace=self.config.engine.namespace,
                timeout=self.config.engine.timeout,
                node=node.index,
                ca_cert=self.config.engine.ca_cert,
            )
        self._engines.append(engine)
        return engine

    def engines(self, token: str | None = None) -> dict[int, SecretEngine]:
        return {node.index: self.engine(node, token) for node in self.nodes}

    async def close(self) -> None:
        for engine in self._engines:
            await engine.close()
        self._engines.clear()
        await self.consensus.close()
