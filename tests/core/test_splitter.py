"""Tests for the threshold share splitter."""

from unittest.mock import AsyncMock

import pytest

from vaultpilot.core.splitter import ThresholdShareSplitter, bind_shares, resolve_threshold
from vaultpilot.engine.base import InitResult
from vaultpilot.errors import AlreadyInitialized, InvalidThreshold, ShareCountMismatch


class TestResolveThreshold:
    def test_single_identity_defaults_to_one(self):
        assert resolve_threshold(1) == 1

    def test_several_identities_default_to_two(self):
        assert resolve_threshold(3) == 2
        assert resolve_threshold(5) == 2

    def test_explicit_threshold_kept(self):
        assert resolve_threshold(5, 3) == 3

    def test_threshold_above_count(self):
        with pytest.raises(InvalidThreshold, match="greater than the number of keys"):
            resolve_threshold(2, 3)

    def test_threshold_one_with_several_keys(self):
        with pytest.raises(InvalidThreshold, match="greater than 1"):
            resolve_threshold(3, 1)

    def test_no_identities(self):
        with pytest.raises(InvalidThreshold):
            resolve_threshold(0)

    def test_zero_threshold(self):
        with pytest.raises(InvalidThreshold):
            resolve_threshold(1, 0)


class TestBindShares:
    def test_binds_in_order(self, identities):
        shares = bind_shares(identities, ["aa", "bb", "cc"])

        assert [s.index for s in shares] == [1, 2, 3]
        assert [s.recipient.name for s in shares] == ["alice.pem", "bob.pem", "carol.pem"]
        assert [s.ciphertext for s in shares] == ["aa", "bb", "cc"]

    def test_count_mismatch(self, identities):
        with pytest.raises(ShareCountMismatch):
            bind_shares(identities, ["aa", "bb"])


class TestSplitter:
    @pytest.mark.asyncio
    async def test_initialize_with_memory_engine(self, memory_engines, identities):
        secret = await ThresholdShareSplitter(memory_engines[1]).initialize(identities)

        assert secret.share_count == 3
        assert secret.threshold == 2
        assert [s.recipient.fingerprint for s in secret.shares] == [
            i.fingerprint for i in identities
        ]
        assert secret.root_credential

    @pytest.mark.asyncio
    async def test_invalid_threshold_never_touches_engine(self, identities):
        engine = AsyncMock()

        with pytest.raises(InvalidThreshold):
            await ThresholdShareSplitter(engine).initialize(identities, threshold=4)
        engine.initialize.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_identity_rejected(self, identities):
        engine = AsyncMock()

        with pytest.raises(InvalidThreshold, match="only be given once"):
            await ThresholdShareSplitter(engine).initialize([identities[0], identities[0]])
        engine.initialize.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_initialize_fails(self, memory_engines, identities):
        await ThresholdShareSplitter(memory_engines[1]).initialize(identities)

        with pytest.raises(AlreadyInitialized):
            await ThresholdShareSplitter(memory_engines[2]).initialize(identities)

    @pytest.mark.asyncio
    async def test_engine_share_count_mismatch(self, identities):
        engine = AsyncMock()
        engine.initialize.return_value = InitResult(keys=["aa"], root_token="s.root")

        with pytest.raises(ShareCountMismatch):
            await ThresholdShareSplitter(engine).initialize(identities)
