"""Tests for the single-flight background poller and poller wiring."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from deal_escrow.config import Settings
from deal_escrow.domain.enums import SettlementKind
from deal_escrow.main import build_pollers
from deal_escrow.orchestration.pollers import SingleFlightPoller
from deal_escrow.settlement import SettlementRegistry


class TestSingleFlightPoller:
    @pytest.mark.asyncio
    async def test_runs_the_job(self) -> None:
        job = AsyncMock(return_value=3)
        poller = SingleFlightPoller("test", job, interval_seconds=60)

        assert await poller.run_once() is True
        job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_skips_while_a_tick_is_in_flight(self) -> None:
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_job() -> None:
            started.set()
            await release.wait()

        poller = SingleFlightPoller("slow", slow_job, interval_seconds=60)
        first = asyncio.create_task(poller.run_once())
        await started.wait()

        assert await poller.run_once() is False

        release.set()
        assert await first is True

    @pytest.mark.asyncio
    async def test_job_errors_do_not_escape(self) -> None:
        job = AsyncMock(side_effect=RuntimeError("chain unreachable"))
        poller = SingleFlightPoller("failing", job, interval_seconds=60)

        assert await poller.run_once() is True
        assert await poller.run_once() is True
        assert job.await_count == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        job = AsyncMock(return_value=0)
        poller = SingleFlightPoller("loop", job, interval_seconds=0.01)

        poller.start()
        assert poller.running
        await asyncio.sleep(0.05)
        await poller.stop()

        assert not poller.running
        assert job.await_count >= 1
        count = job.await_count
        await asyncio.sleep(0.03)
        assert job.await_count == count


class TestBuildPollers:
    def _settings(self, **overrides) -> Settings:
        values = {
            "_env_file": None,
            "pollers_enabled": True,
            "use_xrpl": True,
            "investment_token_contract_address": "0x" + "70" * 20,
        }
        values.update(overrides)
        return Settings(**values)

    def _registry(self, chain=None) -> SettlementRegistry:
        return SettlementRegistry(
            {}, default_kind=SettlementKind.LEDGER_IOU, evm_chain=chain
        )

    def test_disabled(self) -> None:
        settings = self._settings(pollers_enabled=False)
        assert build_pollers(settings, self._registry(MagicMock())) == []

    def test_simulated_settlement_has_no_chain(self) -> None:
        assert build_pollers(self._settings(), self._registry()) == []

    def test_log_sync_and_bridge(self) -> None:
        with (
            patch(
                "deal_escrow.infrastructure.database.engine.get_session_factory",
                return_value=MagicMock(),
            ),
            patch("deal_escrow.infrastructure.redis_client.redis_available", return_value=False),
        ):
            pollers = build_pollers(self._settings(), self._registry(MagicMock()))

        assert [p.name for p in pollers] == ["log_sync", "deposit_bridge"]

    def test_bridge_needs_ledger_mode(self) -> None:
        with patch(
            "deal_escrow.infrastructure.database.engine.get_session_factory",
            return_value=MagicMock(),
        ):
            pollers = build_pollers(
                self._settings(use_xrpl=False), self._registry(MagicMock())
            )

        assert [p.name for p in pollers] == ["log_sync"]
