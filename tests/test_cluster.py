"""Tests for wiring cluster components from configuration."""

import pytest

from vaultpilot.cluster import ENGINE_STATE_FILE, Cluster
from vaultpilot.config.schema import (
    ClusterConfig,
    EngineConfig,
    NodeConfig,
    TransportConfig,
    VaultPilotConfig,
)
from vaultpilot.consensus import ConsulBackend, LocalConsensus
from vaultpilot.engine import HashiCorpVaultEngine, InMemorySecretEngine
from vaultpilot.transport import ComposeLauncher, DockerTransport, LocalLauncher, LocalTransport


def _config(tmp_path, **overrides) -> VaultPilotConfig:
    transport = TransportConfig(local_root=str(tmp_path / "nodes"), **overrides.pop("transport", {}))
    return VaultPilotConfig(
        cluster=ClusterConfig(transport=transport),
        shares_dir=str(tmp_path / "secrets"),
        **overrides,
    )


@pytest.mark.asyncio
async def test_simulation_components(tmp_path):
    """Test simulation mode wires the in-memory engine, directories and local consensus."""
    cluster = Cluster(_config(tmp_path, engine=EngineConfig(provider="memory")))

    assert cluster.simulated
    assert isinstance(cluster.transport, LocalTransport)
    assert isinstance(cluster.launcher, LocalLauncher)
    assert isinstance(cluster.consensus, LocalConsensus)
    assert cluster.memory.state_path == tmp_path / "nodes" / ENGINE_STATE_FILE
    assert isinstance(cluster.engine(cluster.node(2)), InMemorySecretEngine)

    await cluster.close()


@pytest.mark.asyncio
async def test_restart_reseals_simulated_node(tmp_path, identities):
    """Test a transport restart in simulation mode reseals that node only."""
    cluster = Cluster(_config(tmp_path), local=True)
    await cluster.launcher.launch(3)
    cluster.memory._barrier.nodes[1].sealed = False
    cluster.memory._barrier.nodes[2].sealed = False

    await cluster.transport.restart(cluster.node(2))

    assert not (await cluster.engine(cluster.node(1)).seal_status()).sealed
    assert (await cluster.engine(cluster.node(2)).seal_status()).sealed
    await cluster.close()


@pytest.mark.asyncio
async def test_live_components(tmp_path):
    """Test live mode wires Vault clients, docker and Consul on node 1."""
    cluster = Cluster(_config(tmp_path))

    assert not cluster.simulated
    assert isinstance(cluster.transport, DockerTransport)
    assert isinstance(cluster.launcher, ComposeLauncher)
    assert cluster.launcher.project == "vault"
    assert isinstance(cluster.consensus, ConsulBackend)
    assert cluster.consensus.consul_addr == "http://127.0.0.1:8500"

    engines = cluster.engines(token="s.token")
    assert all(isinstance(e, HashiCorpVaultEngine) for e in engines.values())
    assert engines[3].vault_addr == "http://127.0.0.1:8220"

    await cluster.close()


@pytest.mark.asyncio
async def test_live_with_local_transport(tmp_path):
    """Test the local transport can be combined with a live engine."""
    cluster = Cluster(_config(tmp_path, transport={"method": "local"}))

    assert isinstance(cluster.transport, LocalTransport)
    assert isinstance(cluster.consensus, ConsulBackend)
    await cluster.close()


def test_unknown_node(tmp_path):
    """Test looking up a node outside the cluster."""
    cluster = Cluster(_config(tmp_path), local=True)

    with pytest.raises(ValueError, match="1..3"):
        cluster.node(4)


@pytest.mark.asyncio
async def test_secured_cluster_engines_use_https_and_ca(tmp_path, pki):
    """Test a secured topology reaches Vault over https, trusting the cluster CA."""
    nodes = [
        NodeConfig(
            index=i,
            address=f"https://127.0.0.1:{8200 + 10 * (i - 1)}",
            consul_address=f"http://127.0.0.1:{8500 + 10 * (i - 1)}",
        )
        for i in (1, 2)
    ]
    config = VaultPilotConfig(
        cluster=ClusterConfig(nodes=nodes, transport=TransportConfig(local_root=str(tmp_path))),
        engine=EngineConfig(ca_cert=str(pki["ca"])),
        shares_dir=str(tmp_path / "secrets"),
    )
    cluster = Cluster(config)

    engines = cluster.engines()

    assert engines[2].vault_addr == "https://127.0.0.1:8210"
    assert all(e.ca_cert == str(pki["ca"]) for e in engines.values())
    await cluster.close()
