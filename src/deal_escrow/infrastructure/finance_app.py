"""HTTP client for the external finance reporting app.

Published deals are mirrored there as shipments; their vault activity and
milestone approvals are pushed as they happen. Tests inject an
``httpx.MockTransport`` through ``transport``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from deal_escrow.domain.exceptions import FinanceReportingError, MissingConfigurationError
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from deal_escrow.infrastructure.database.orm_models import Deal, DealLog, Milestone

logger = get_logger(__name__)


class FinanceAppClient:
    """Pushes published deals, their activity and milestone updates."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    async def publish_shipment(self, deal: Deal) -> dict:
        return await self._post(
            "/shipments",
            {
                "dealId": str(deal.id),
                "name": deal.name,
                "description": deal.description,
                "origin": deal.origin,
                "destination": deal.destination,
                "transport": deal.transport,
                "investmentAmount": str(deal.investment_amount),
                "nftId": deal.nft_id,
                "vaultAddress": deal.vault_address or deal.xrpl_vault_address,
                "milestones": [
                    {
                        "index": m.position,
                        "description": m.description,
                        "fundsDistribution": m.funds_distribution,
                        "status": m.status,
                    }
                    for m in deal.milestones
                ],
            },
        )

    async def create_activity(self, deal: Deal, log: DealLog) -> dict:
        return await self._post(
            f"/shipments/{deal.id}/activities",
            {
                "event": log.event,
                "message": log.message,
                "txHash": log.tx_hash,
                "blockNumber": log.block_number,
                "timestamp": log.block_timestamp.isoformat() if log.block_timestamp else None,
            },
        )

    async def update_milestone(self, deal: Deal, milestone: Milestone) -> dict:
        return await self._post(
            f"/shipments/{deal.id}/milestones/{milestone.position}",
            {"status": milestone.status, "approvalStatus": milestone.approval_status},
        )

    async def _post(self, path: str, payload: dict) -> dict:
        if not self.configured:
            raise MissingConfigurationError("FINANCE_APP_URL")
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(path, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.error("finance_app.request_failed", path=path, error=str(exc))
                raise FinanceReportingError(f"Finance app request failed: {path}") from exc
        logger.info("finance_app.pushed", path=path, status=response.status_code)
        return response.json() if response.content else {}
