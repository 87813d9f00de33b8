"""Tests for participant notifications and the finance app client."""

from __future__ import annotations

import json
import uuid
from types import SimpleNamespace

import httpx
import pytest

from deal_escrow.domain.enums import NotificationEvent
from deal_escrow.domain.exceptions import FinanceReportingError, MissingConfigurationError
from deal_escrow.infrastructure.finance_app import FinanceAppClient
from deal_escrow.services.notification_service import NotificationService

WEBHOOK = "https://hooks.test/deals"


def _deal() -> SimpleNamespace:
    return SimpleNamespace(
        id=uuid.UUID("12345678-1234-5678-1234-567812345678"),
        name="Coffee shipment",
        status="CONFIRMED",
    )


def _milestone() -> SimpleNamespace:
    return SimpleNamespace(
        id=uuid.UUID("87654321-4321-8765-4321-876543218765"),
        position=2,
        description="Loaded on vessel",
        status="IN_PROGRESS",
        approval_status="SUBMITTED",
    )


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_posts_event_to_webhook(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(204)

        notifier = NotificationService(WEBHOOK, transport=httpx.MockTransport(handler))
        delivered = await notifier.send(
            NotificationEvent.MILESTONE_APPROVAL_REQUESTED,
            ["buyer@example.com"],
            _deal(),
            actor_email="supplier@example.com",
            milestone=_milestone(),
        )

        assert delivered is True
        body = json.loads(captured[0].content)
        assert body["event"] == "milestone-approval-requested"
        assert body["recipients"] == ["buyer@example.com"]
        assert body["actor"] == "supplier@example.com"
        assert body["milestone"]["index"] == 2
        assert body["deal"]["status"] == "CONFIRMED"

    @pytest.mark.asyncio
    async def test_delivery_failure_is_reported(self) -> None:
        notifier = NotificationService(
            WEBHOOK, transport=httpx.MockTransport(lambda r: httpx.Response(503))
        )
        delivered = await notifier.send(
            NotificationEvent.DEAL_CONFIRMED, ["supplier@example.com"], _deal()
        )
        assert delivered is False

    @pytest.mark.asyncio
    async def test_no_recipients_skips_delivery(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("webhook should not be called")

        notifier = NotificationService(WEBHOOK, transport=httpx.MockTransport(handler))
        assert await notifier.send(NotificationEvent.DEAL_COMPLETED, [], _deal()) is True

    @pytest.mark.asyncio
    async def test_log_only_without_webhook(self) -> None:
        notifier = NotificationService()
        assert await notifier.send(NotificationEvent.NEW_PROPOSAL, ["a@b.c"], _deal()) is True


class TestFinanceAppClient:
    @pytest.mark.asyncio
    async def test_milestone_update(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json={"ok": True})

        client = FinanceAppClient(
            "https://finance.test/", api_key="k", transport=httpx.MockTransport(handler)
        )
        milestone = SimpleNamespace(position=3, status="COMPLETED", approval_status="APPROVED")

        assert await client.update_milestone(_deal(), milestone) == {"ok": True}
        request = captured[0]
        assert request.url.path == f"/shipments/{_deal().id}/milestones/3"
        assert request.headers["Authorization"] == "Bearer k"
        assert json.loads(request.content) == {"status": "COMPLETED", "approvalStatus": "APPROVED"}

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        client = FinanceAppClient(
            "https://finance.test", transport=httpx.MockTransport(lambda r: httpx.Response(500))
        )
        with pytest.raises(FinanceReportingError):
            await client.update_milestone(_deal(), _milestone())

    @pytest.mark.asyncio
    async def test_unconfigured(self) -> None:
        client = FinanceAppClient("")
        assert client.configured is False
        with pytest.raises(MissingConfigurationError):
            await client.update_milestone(_deal(), _milestone())
