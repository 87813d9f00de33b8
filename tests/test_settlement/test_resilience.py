"""Tests for the timeout and retry policy around settlement calls."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from deal_escrow.domain.exceptions import SettlementError, WrongNextMilestoneError
from deal_escrow.settlement.resilience import ResiliencePolicy


def _policy(**overrides) -> ResiliencePolicy:
    values = {"timeout_seconds": 1.0, "max_attempts": 3, "backoff_multiplier": 0, "backoff_max": 0}
    values.update(overrides)
    return ResiliencePolicy(**values)


class TestReads:
    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        fn = AsyncMock(return_value=42)
        assert await _policy().run("evm.block_number", fn) == 42
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self) -> None:
        fn = AsyncMock(side_effect=[OSError("reset"), httpx.ReadError("eof"), 7])
        assert await _policy().run("evm.get_logs", fn) == 7
        assert fn.await_count == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_settlement_error(self) -> None:
        fn = AsyncMock(side_effect=OSError("down"))
        with pytest.raises(SettlementError, match="evm.get_logs failed"):
            await _policy(max_attempts=2).run("evm.get_logs", fn)
        assert fn.await_count == 2


class TestWrites:
    @pytest.mark.asyncio
    async def test_read_errors_are_not_retried(self) -> None:
        fn = AsyncMock(side_effect=httpx.ReadError("eof"))
        with pytest.raises(SettlementError):
            await _policy().run("xrpl.payment", fn, idempotent=False)
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_errors_are_retried(self) -> None:
        fn = AsyncMock(side_effect=[ConnectionRefusedError(), "0xhash"])
        assert await _policy().run("evm.mint.send", fn, idempotent=False) == "0xhash"
        assert fn.await_count == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_becomes_settlement_error(self) -> None:
        async def slow() -> None:
            await asyncio.sleep(5)

        with pytest.raises(SettlementError, match="timed out"):
            await _policy(timeout_seconds=0.01, max_attempts=1).run("evm.receipt", slow)

    @pytest.mark.asyncio
    async def test_sdk_errors_are_wrapped(self) -> None:
        fn = AsyncMock(side_effect=ValueError("execution reverted"))
        with pytest.raises(SettlementError, match="execution reverted"):
            await _policy().run("evm.proceed", fn)
        fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_domain_errors_pass_through(self) -> None:
        fn = AsyncMock(side_effect=WrongNextMilestoneError(2))
        with pytest.raises(WrongNextMilestoneError):
            await _policy().run("evm.proceed", fn)
