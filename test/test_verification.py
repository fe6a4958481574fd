#!/usr/bin/env python3
"""Tests for retrying reads and write confirmation."""

from unittest.mock import AsyncMock, patch

import pytest

from vault_keeper.config import ConfirmationPolicy, RetryPolicy
from vault_keeper.errors import AllEndpointsUnreachable, ConsensusNotReached, WriteConfirmationTimeout
from vault_keeper.models import ConsensusOutcome
from vault_keeper.verification import VerifiedReads


def not_reached() -> ConsensusNotReached:
    outcome = ConsensusOutcome(chain="base", value=1, agreement=1, successful=2, total=3)
    return ConsensusNotReached("round", outcome, "need 2 matching responses, got 1")


class TestVerifiedRead:
    """Retry policy around quorum reads."""

    @pytest.mark.asyncio
    async def test_retries_until_quorum(self):
        reader = AsyncMock()
        reader.read.side_effect = [not_reached(), not_reached(), 7]
        reads = VerifiedReads(reader, RetryPolicy(attempts=3, backoff=1.5))

        with patch("vault_keeper.verification.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await reads.read("base", AsyncMock(), "round") == 7

        assert reader.read.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.5, 3.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self):
        reader = AsyncMock()
        reader.read.side_effect = AllEndpointsUnreachable("base", "round", [])
        reads = VerifiedReads(reader, RetryPolicy(attempts=2, backoff=0))

        with pytest.raises(AllEndpointsUnreachable):
            await reads.read("base", AsyncMock(), "round")

        assert reader.read.call_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        reader = AsyncMock()
        reader.read.side_effect = ValueError("Unknown chain: foo")
        reads = VerifiedReads(reader, RetryPolicy(attempts=3, backoff=0))

        with pytest.raises(ValueError):
            await reads.read("foo", AsyncMock(), "round")

        assert reader.read.call_count == 1


class TestConfirm:
    """Polling until a write becomes visible."""

    @pytest.mark.asyncio
    async def test_confirms_once_condition_holds(self):
        reader = AsyncMock()
        reader.read.side_effect = [1, not_reached(), 2]
        reads = VerifiedReads(reader, confirmation=ConfirmationPolicy(timeout=1.0, poll_interval=0.01))

        observed = await reads.confirm("base", AsyncMock(), "round", lambda r: r != 1, "applyGlobalPrice", 2)

        assert observed == 2
        assert reader.read.call_count == 3

    @pytest.mark.asyncio
    async def test_timeout_carries_last_observation(self):
        reader = AsyncMock()
        reader.read.return_value = False
        reads = VerifiedReads(reader, confirmation=ConfirmationPolicy(timeout=0.05, poll_interval=0.01))

        with pytest.raises(WriteConfirmationTimeout) as exc_info:
            await reads.confirm("base", AsyncMock(), "isPaused", lambda p: p is True, "pause", True)

        error = exc_info.value
        assert error.chain == "base"
        assert error.operation == "pause"
        assert error.expected is True
        assert error.observed is False
        assert error.last_error is None

    @pytest.mark.asyncio
    async def test_timeout_with_quorum_failures(self):
        reader = AsyncMock()
        reader.read.side_effect = not_reached()
        reads = VerifiedReads(reader, confirmation=ConfirmationPolicy(timeout=0.05, poll_interval=0.01))

        with pytest.raises(WriteConfirmationTimeout) as exc_info:
            await reads.confirm("base", AsyncMock(), "round", lambda r: r == 2, "applyGlobalPrice", 2)

        assert isinstance(exc_info.value.last_error, ConsensusNotReached)
        assert exc_info.value.to_dict()["last_error"]["error"] == "ConsensusNotReached"


class TestEnsureFlag:
    """Read-before-write toggling of on-chain booleans."""

    @pytest.mark.asyncio
    async def test_no_write_when_already_set(self):
        reader = AsyncMock()
        reader.read.return_value = True
        write = AsyncMock()
        reads = VerifiedReads(reader)

        written = await reads.ensure_flag("base", AsyncMock, "depositsEnabled", True, write, "enable deposits")

        assert written is False
        write.assert_not_called()

    @pytest.mark.asyncio
    async def test_writes_and_confirms(self):
        reader = AsyncMock()
        reader.read.side_effect = [False, False, True]
        write = AsyncMock(return_value="0x1")
        reads = VerifiedReads(reader, confirmation=ConfirmationPolicy(timeout=1.0, poll_interval=0.01))

        written = await reads.ensure_flag("base", AsyncMock, "depositsEnabled", True, write, "enable deposits")

        assert written is True
        write.assert_called_once_with()
        assert reader.read.call_count == 3

    @pytest.mark.asyncio
    async def test_unconfirmed_write_times_out(self):
        reader = AsyncMock()
        reader.read.return_value = False
        reads = VerifiedReads(reader, confirmation=ConfirmationPolicy(timeout=0.05, poll_interval=0.01))

        with pytest.raises(WriteConfirmationTimeout) as exc_info:
            await reads.ensure_flag("base", AsyncMock, "isPaused", True, AsyncMock(), "pause")

        assert exc_info.value.operation == "pause"
        assert exc_info.value.expected is True
