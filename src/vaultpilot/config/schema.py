"""Pydantic models for vaultpilot.yaml configuration."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vaultpilot.models import ClusterNode

DEFAULT_NODE_COUNT = 3


class NodeConfig(BaseModel):
    """Configuration for a single Vault + Consul node."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(description="1-based ordinal of the node", ge=1)
    name: str | None = Field(
        default=None,
        description="Container or host name (default: <project>_<service>_<index>)",
    )
    address: str = Field(description="Vault API address, e.g. http://10.0.0.1:8200")
    consul_address: str = Field(description="Consul HTTP API address, e.g. http://10.0.0.1:8500")


def _default_nodes() -> list[NodeConfig]:
    return [
        NodeConfig(
            index=i,
            address=f"http://127.0.0.1:{8200 + 10 * (i - 1)}",
            consul_address=f"http://127.0.0.1:{8500 + 10 * (i - 1)}",
        )
        for i in range(1, DEFAULT_NODE_COUNT + 1)
    ]


class TransportConfig(BaseModel):
    """How files reach nodes and how nodes are restarted."""

    model_config = ConfigDict(frozen=True)

    method: Literal["docker", "local"] = Field(
        default="docker",
        description="'docker' drives containers through the Docker SDK, 'local' uses directories",
    )
    compose_file: str = Field(default="docker-compose.yml", description="Docker Compose manifest")
    project: str = Field(default="vault", description="Compose project name")
    service: str = Field(default="consul-vault", description="Compose service running Vault")
    local_root: str = Field(
        default="~/.vaultpilot/nodes",
        description="Root directory for the local transport (one subdirectory per node)",
    )
    command_timeout: float = Field(
        default=120.0, description="Timeout in seconds for a single Docker call", gt=0
    )


class ClusterConfig(BaseModel):
    """Fixed cluster topology. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    nodes: list[NodeConfig] = Field(
        default_factory=_default_nodes,
        description="Cluster nodes, indexed 1..N",
    )
    transport: TransportConfig = Field(default_factory=TransportConfig)

    @model_validator(mode="after")
    def _check_indices(self) -> "ClusterConfig":
        indices = sorted(node.index for node in self.nodes)
        if not indices:
            raise ValueError("cluster needs at least one node")
        if indices != list(range(1, len(indices) + 1)):
            raise ValueError(f"node indices must be 1..{len(indices)}, got {indices}")
        return self

    @property
    def size(self) -> int:
        return len(self.nodes)

    def node_name(self, node: NodeConfig) -> str:
        """Name the transport uses for *node*."""
        if node.name:
            return node.name
        return f"{self.transport.project}_{self.transport.service}_{node.index}"

    def cluster_nodes(self) -> list[ClusterNode]:
        """Fresh runtime node records, ordered by index."""
        return [
            ClusterNode(
                index=node.index,
                name=self.node_name(node),
                address=node.address,
                consul_address=node.consul_address,
            )
            for node in sorted(self.nodes, key=lambda n: n.index)
        ]


class EngineConfig(BaseModel):
    """Secret-storage engine client configuration."""

    model_config = ConfigDict(frozen=True)

    provider: Literal["vault", "memory"] = Field(
        default="vault",
        description="'vault' talks to the Vault HTTP API, 'memory' simulates the cluster locally",
    )
    timeout: float = Field(default=30.0, description="HTTP timeout in seconds", gt=0)
    namespace: str | None = Field(default=None, description="Vault namespace (enterprise)")
    ca_cert: str | None = Field(
        default=None,
        description="CA certificate trusted for https node addresses once the cluster is secured",
    )


class ConsulConfig(BaseModel):
    """Consensus backend client configuration."""

    model_config = ConfigDict(frozen=True)

    timeout: float = Field(default=10.0, description="HTTP timeout in seconds", gt=0)
    lock_ttl: str = Field(default="60s", description="Session TTL for bootstrap locks")
    kv_prefix: str = Field(default="vaultpilot", description="KV prefix for bootstrap records")


class RolloutConfig(BaseModel):
    """Remote paths used by the secure rollout."""

    model_config = ConfigDict(frozen=True)

    remote_dir: str = Field(default="/etc/secure", description="Directory on each node")
    consul_config: str = Field(
        default="/etc/consul/secure.json",
        description="Consul config fragment enabling gossip encryption and TLS",
    )
    vault_config: str = Field(
        default="/etc/vault/listener.json",
        description="Vault listener config enabling TLS",
    )


class BootstrapConfig(BaseModel):
    """Bootstrap sequencing parameters."""

    model_config = ConfigDict(frozen=True)

    quorum_timeout: float = Field(
        default=300.0, description="Seconds to wait for the consensus quorum", gt=0
    )
    initial_delay: float = Field(default=1.0, description="First poll interval in seconds", gt=0)
    max_delay: float = Field(default=16.0, description="Upper bound for the poll interval", gt=0)
    decrypt_timeout: float = Field(
        default=300.0, description="Seconds allowed for interactive share decryption", gt=0
    )


class VaultPilotConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(frozen=True)

    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    consul: ConsulConfig = Field(default_factory=ConsulConfig)
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    shares_dir: str = Field(
        default="secrets",
        description="Directory receiving encrypted share artifacts and the root credential record",
    )
