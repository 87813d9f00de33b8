"""Notification Service: participant-facing events.

Every notification is logged. When NOTIFICATIONS_WEBHOOK_URL is set the event
is also POSTed there for delivery (email, chat, ...). Delivery failures are
logged and reported as ``False``; they never abort the deal operation that
triggered them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from deal_escrow.config import Settings
    from deal_escrow.domain.enums import NotificationEvent
    from deal_escrow.infrastructure.database.orm_models import Deal, Milestone

logger = get_logger(__name__)


class NotificationService:
    """Sends deal and milestone events to participants."""

    def __init__(
        self,
        webhook_url: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> NotificationService:
        return cls(
            webhook_url=settings.notifications_webhook_url,
            timeout_seconds=settings.notifications_timeout_seconds,
        )

    async def send(
        self,
        event: NotificationEvent,
        recipients: list[str],
        deal: Deal,
        *,
        actor_email: str | None = None,
        milestone: Milestone | None = None,
    ) -> bool:
        """Dispatch one event to ``recipients``. Returns False if delivery failed."""
        if not recipients:
            return True

        payload = {
            "event": str(event),
            "recipients": recipients,
            "deal": {"id": str(deal.id), "name": deal.name, "status": deal.status},
            "actor": actor_email,
        }
        if milestone is not None:
            payload["milestone"] = {
                "id": str(milestone.id),
                "index": milestone.position,
                "description": milestone.description,
                "approvalStatus": milestone.approval_status,
            }

        logger.info(
            "notification.sent",
            notification=str(event),
            deal_id=str(deal.id),
            recipients=len(recipients),
        )
        if not self._webhook_url:
            return True

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(self._webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "notification.delivery_failed",
                notification=str(event),
                deal_id=str(deal.id),
                error=str(exc),
            )
            return False
        return True
