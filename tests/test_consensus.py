"""Tests for the consensus backend clients."""

import logging
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from vaultpilot.consensus import ConsulBackend, LocalConsensus
from vaultpilot.errors import AlreadyInitialized, ConsensusError, LockUnavailable

CONSUL = "http://consul.local:8500"


@pytest.fixture
def backend():
    return ConsulBackend(consul_addr=CONSUL)


class TestConsulStatus:
    @pytest.mark.asyncio
    @respx.mock
    async def test_peer_count_excludes_self(self, backend):
        respx.get(f"{CONSUL}/v1/status/peers").mock(
            return_value=httpx.Response(
                200, json=["10.0.0.1:8300", "10.0.0.2:8300", "10.0.0.3:8300"]
            )
        )
        respx.get(f"{CONSUL}/v1/status/leader").mock(
            return_value=httpx.Response(200, json="10.0.0.1:8300")
        )

        status = await backend.status()

        assert status.peer_count == 2
        assert status.leader == "10.0.0.1:8300"

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_leader_yet(self, backend):
        respx.get(f"{CONSUL}/v1/status/peers").mock(return_value=httpx.Response(200, json=[]))
        respx.get(f"{CONSUL}/v1/status/leader").mock(return_value=httpx.Response(200, json=""))

        status = await backend.status()

        assert status.peer_count == 0
        assert status.leader is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error(self, backend):
        respx.get(f"{CONSUL}/v1/status/peers").mock(
            side_effect=httpx.ConnectError("Connection refused")
        )

        with pytest.raises(ConsensusError, match="Failed to connect"):
            await backend.status()

    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error(self, backend):
        respx.get(f"{CONSUL}/v1/status/peers").mock(
            return_value=httpx.Response(500, text="No cluster leader")
        )

        with pytest.raises(ConsensusError, match="500"):
            await backend.status()


class TestConsulKV:
    @pytest.mark.asyncio
    @respx.mock
    async def test_write(self, backend):
        route = respx.put(f"{CONSUL}/v1/kv/vaultpilot/initialized").mock(
            return_value=httpx.Response(200, json=True)
        )

        await backend.write("vaultpilot/initialized", '{"threshold": 2}')

        assert route.calls.last.request.content == b'{"threshold": 2}'

    @pytest.mark.asyncio
    @respx.mock
    async def test_write_refused(self, backend):
        respx.put(f"{CONSUL}/v1/kv/vaultpilot/initialized").mock(
            return_value=httpx.Response(200, json=False)
        )

        with pytest.raises(ConsensusError, match="refused"):
            await backend.write("vaultpilot/initialized", "{}")


class TestConsulLock:
    @pytest.mark.asyncio
    @respx.mock
    async def test_lock_acquire_and_release(self, backend):
        create = respx.put(f"{CONSUL}/v1/session/create").mock(
            return_value=httpx.Response(200, json={"ID": "sess-1"})
        )
        kv = respx.put(f"{CONSUL}/v1/kv/vaultpilot/init").mock(
            return_value=httpx.Response(200, json=True)
        )
        destroy = respx.put(f"{CONSUL}/v1/session/destroy/sess-1").mock(
            return_value=httpx.Response(200, json=True)
        )

        async with backend.lock("vaultpilot/init") as handle:
            assert handle == "sess-1"
            assert kv.calls.last.request.url.params["acquire"] == "sess-1"

        assert b'"TTL":"60s"' in create.calls.last.request.content.replace(b" ", b"")
        assert kv.calls.last.request.url.params["release"] == "sess-1"
        assert destroy.called

    @pytest.mark.asyncio
    @respx.mock
    async def test_lock_held(self, backend):
        respx.put(f"{CONSUL}/v1/session/create").mock(
            return_value=httpx.Response(200, json={"ID": "sess-2"})
        )
        respx.put(f"{CONSUL}/v1/kv/vaultpilot/init").mock(
            return_value=httpx.Response(200, json=False)
        )
        destroy = respx.put(f"{CONSUL}/v1/session/destroy/sess-2").mock(
            return_value=httpx.Response(200, json=True)
        )

        with pytest.raises(LockUnavailable):
            await backend.acquire_lock("vaultpilot/init")
        assert destroy.called


class TestLocalConsensus:
    @pytest.mark.asyncio
    async def test_status_follows_members(self):
        members = [0]
        consensus = LocalConsensus(lambda: members[0])

        assert (await consensus.status()).leader is None

        members[0] = 3
        status = await consensus.status()
        assert status.peer_count == 2
        assert status.leader == "local"

    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self):
        consensus = LocalConsensus(lambda: 3)

        async with consensus.lock("init"):
            with pytest.raises(LockUnavailable):
                await consensus.acquire_lock("init")

        assert await consensus.acquire_lock("init")

    @pytest.mark.asyncio
    async def test_release_with_stale_handle_is_ignored(self):
        consensus = LocalConsensus(lambda: 3)
        handle = await consensus.acquire_lock("init")

        await consensus.release_lock("init", "local-999")

        with pytest.raises(LockUnavailable):
            await consensus.acquire_lock("init")
        await consensus.release_lock("init", handle)


class TestLockRelease:
    @pytest.mark.asyncio
    async def test_release_failure_does_not_mask_block_error(self, caplog):
        consensus = LocalConsensus(lambda: 3)
        failing_release = AsyncMock(side_effect=ConsensusError("session expired"))

        with patch.object(consensus, "release_lock", failing_release):
            with caplog.at_level(logging.WARNING, logger="vaultpilot.consensus"):
                with pytest.raises(AlreadyInitialized):
                    async with consensus.lock("init"):
                        raise AlreadyInitialized("Vault is already initialized", step="init")

        failing_release.assert_awaited_once()
        assert "session expired" in caplog.text

    @pytest.mark.asyncio
    async def test_release_failure_after_clean_block_is_raised(self):
        consensus = LocalConsensus(lambda: 3)

        with patch.object(
            consensus, "release_lock", AsyncMock(side_effect=ConsensusError("session expired"))
        ):
            with pytest.raises(ConsensusError, match="session expired"):
                async with consensus.lock("init"):
                    pass

    @pytest.mark.asyncio
    @respx.mock
    async def test_consul_lock_released_when_block_fails(self, backend):
        respx.put(f"{CONSUL}/v1/session/create").mock(
            return_value=httpx.Response(200, json={"ID": "sess-3"})
        )
        kv = respx.put(f"{CONSUL}/v1/kv/vaultpilot/init").mock(
            return_value=httpx.Response(200, json=True)
        )
        destroy = respx.put(f"{CONSUL}/v1/session/destroy/sess-3").mock(
            return_value=httpx.Response(200, json=True)
        )

        with pytest.raises(AlreadyInitialized):
            async with backend.lock("vaultpilot/init"):
                raise AlreadyInitialized("Vault is already initialized")

        assert kv.calls.last.request.url.params["release"] == "sess-3"
        assert destroy.called
