"""Tests for bootstrap sequencing."""

import json
from unittest.mock import AsyncMock

import pytest

from vaultpilot.consensus import ConsensusStatus, LocalConsensus
from vaultpilot.core.bootstrap import (
    BootstrapStep,
    ClusterBootstrapSequencer,
    SecureMaterial,
    initialize_cluster,
    wait_for_quorum,
)
from vaultpilot.core.distribution import ShareStore, read_root_credential
from vaultpilot.crypto.decrypt import RsaKeyDecryptor
from vaultpilot.errors import BootstrapFailed, ConsensusError, LockUnavailable, QuorumTimeout
from vaultpilot.models import SealState
from vaultpilot.transport.local import LocalLauncher, LocalTransport


class FakeSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


# ---------------------------------------------------------------------------
# Quorum wait
# ---------------------------------------------------------------------------


class TestWaitForQuorum:
    @pytest.mark.asyncio
    async def test_returns_once_peers_visible(self):
        consensus = AsyncMock()
        consensus.status.side_effect = [
            ConsensusStatus(peer_count=0),
            ConsensusStatus(peer_count=1),
            ConsensusStatus(peer_count=2, leader="10.0.0.1:8300"),
        ]
        sleep = FakeSleep()

        status = await wait_for_quorum(consensus, expected_peers=2, sleep=sleep)

        assert status.leader == "10.0.0.1:8300"
        assert sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        consensus = AsyncMock()
        consensus.status.return_value = ConsensusStatus(peer_count=0)
        sleep = FakeSleep()

        with pytest.raises(QuorumTimeout):
            await wait_for_quorum(
                consensus, expected_peers=2, timeout=40, max_delay=8, sleep=sleep
            )

        assert sleep.calls == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0, 8.0, 1.0]
        assert sum(sleep.calls) == 40

    @pytest.mark.asyncio
    async def test_timeout_carries_last_status(self):
        consensus = AsyncMock()
        consensus.status.return_value = ConsensusStatus(peer_count=1)

        with pytest.raises(QuorumTimeout, match="1/2 peers") as exc_info:
            await wait_for_quorum(consensus, expected_peers=2, timeout=3, sleep=FakeSleep())

        assert exc_info.value.partial.peer_count == 1
        assert exc_info.value.step == BootstrapStep.QUORUM

    @pytest.mark.asyncio
    async def test_unreachable_backend_counts_as_not_yet(self):
        consensus = AsyncMock()
        consensus.status.side_effect = [
            ConsensusError("connection refused"),
            ConsensusStatus(peer_count=2),
        ]

        status = await wait_for_quorum(consensus, expected_peers=2, sleep=FakeSleep())

        assert status.peer_count == 2


# ---------------------------------------------------------------------------
# Initialization under the lock
# ---------------------------------------------------------------------------


class TestInitializeCluster:
    @pytest.mark.asyncio
    async def test_writes_artifacts_record_and_marker(self, memory_engines, identities, tmp_path):
        consensus = LocalConsensus(lambda: 3)
        store = ShareStore(tmp_path)

        threshold, report = await initialize_cluster(
            memory_engines[1], consensus, store, identities
        )

        assert threshold == 2
        assert report.written == 3
        assert read_root_credential(store).threshold == 2

        marker = json.loads(consensus.kv["vaultpilot/initialized"])
        assert marker["share_count"] == 3
        assert marker["recipients"] == [i.fingerprint for i in identities]
        assert "token" not in consensus.kv["vaultpilot/initialized"]

        # lock released
        assert await consensus.acquire_lock("vaultpilot/init")

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, memory_engines, identities, tmp_path):
        consensus = LocalConsensus(lambda: 3)
        await consensus.acquire_lock("vaultpilot/init")

        with pytest.raises(LockUnavailable):
            await initialize_cluster(memory_engines[1], consensus, ShareStore(tmp_path), identities)

        assert not await memory_engines[1].is_initialized()


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


@pytest.fixture
def sequencer(nodes, memory_cluster, tmp_path, default_config):
    root = tmp_path / "nodes"
    launcher = LocalLauncher(root, [node.name for node in nodes])
    return ClusterBootstrapSequencer(
        nodes=nodes,
        launcher=launcher,
        consensus=LocalConsensus(launcher.members_up),
        transport=LocalTransport(root, on_restart=memory_cluster.restart),
        engine_factory=lambda node, token: memory_cluster.node(node.index, token),
        store=ShareStore(tmp_path / "secrets"),
        config=default_config,
    )


class TestSequencer:
    @pytest.mark.asyncio
    async def test_full_bootstrap(self, sequencer, identities, private_keys, memory_cluster, pki):
        decryptors = {
            "alice.pem": RsaKeyDecryptor(private_keys["alice.pem"]),
            "bob.pem": RsaKeyDecryptor(private_keys["bob.pem"]),
        }
        material = SecureMaterial(
            tls_key=pki["key"].read_text(),
            tls_cert=pki["cert"].read_text(),
            ca_cert=pki["ca"].read_text(),
        )

        report = await sequencer.run(
            identities,
            secure_material=material,
            decryptors=decryptors,
            policies={"readonly": 'path "secret/*" { capabilities = ["read"] }'},
        )

        assert report.completed == [
            BootstrapStep.LAUNCH,
            BootstrapStep.QUORUM,
            BootstrapStep.SECURE,
            BootstrapStep.INIT,
            BootstrapStep.UNSEAL,
            BootstrapStep.POLICY,
        ]
        assert report.quorum.peer_count == 2
        assert report.rollout.version == 1
        assert report.threshold == 2
        assert report.unsealed
        assert len(report.unseal) == 2
        assert report.policies == ["readonly"]
        assert "readonly" in memory_cluster.policies
        assert all(node.seal_state == SealState.UNSEALED for node in sequencer.nodes)
        assert read_root_credential(sequencer.store).token not in report.model_dump_json()

    @pytest.mark.asyncio
    async def test_insufficient_decryptors_leaves_cluster_sealed(
        self, sequencer, identities, private_keys
    ):
        report = await sequencer.run(
            identities,
            decryptors={"carol.pem": RsaKeyDecryptor(private_keys["carol.pem"])},
            policies={"readonly": "path"},
        )

        assert not report.unsealed
        assert BootstrapStep.UNSEAL in report.completed
        assert BootstrapStep.POLICY not in report.completed
        assert report.policies == []

    @pytest.mark.asyncio
    async def test_demo_single_operator(self, sequencer, identities, private_keys):
        report = await sequencer.run(
            identities[:1],
            decryptors={"alice.pem": RsaKeyDecryptor(private_keys["alice.pem"])},
            demo=True,
        )

        assert report.threshold == 1
        assert report.unsealed

    @pytest.mark.asyncio
    async def test_demo_rejects_several_identities(self, sequencer, identities):
        with pytest.raises(BootstrapFailed, match="exactly one") as exc_info:
            await sequencer.run(identities, demo=True)

        assert exc_info.value.step == BootstrapStep.INIT
        assert exc_info.value.partial.completed == []

    @pytest.mark.asyncio
    async def test_init_failure_names_step(self, sequencer, identities):
        with pytest.raises(BootstrapFailed) as exc_info:
            await sequencer.run(identities, threshold=5)

        error = exc_info.value
        assert error.step == BootstrapStep.INIT
        assert error.partial.completed == [BootstrapStep.LAUNCH, BootstrapStep.QUORUM]

    @pytest.mark.asyncio
    async def test_second_bootstrap_refused(self, sequencer, identities):
        await sequencer.run(identities)

        with pytest.raises(BootstrapFailed, match="already initialized"):
            await sequencer.run(identities)

    @pytest.mark.asyncio
    async def test_missing_material_aborts_secure_step(self, sequencer, identities, pki):
        material = SecureMaterial(tls_key=pki["key"].read_text(), tls_cert="")

        with pytest.raises(BootstrapFailed) as exc_info:
            await sequencer.run(identities, secure_material=material)

        assert exc_info.value.step == BootstrapStep.SECURE
