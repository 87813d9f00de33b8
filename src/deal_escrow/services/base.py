"""Helpers shared by the deal and milestone services."""

from __future__ import annotations

from typing import TYPE_CHECKING

from statemachine.exceptions import TransitionNotAllowed

from deal_escrow.config import get_settings
from deal_escrow.domain.authorization import notification_recipients
from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import (
    DealNotFoundError,
    InvalidDealStateError,
    InvalidMilestoneTransitionError,
)
from deal_escrow.domain.settlement_protocol import SettlementLinkage
from deal_escrow.domain.state_machine import MilestoneApprovalMachine, validate_transition
from deal_escrow.infrastructure.database.repositories import (
    DealLogRepository,
    DealRepository,
    LogSyncJobRepository,
    UserRepository,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from deal_escrow.config import Settings
    from deal_escrow.domain.enums import NotificationEvent
    from deal_escrow.infrastructure.database.orm_models import Deal, Milestone, User
    from deal_escrow.infrastructure.finance_app import FinanceAppClient
    from deal_escrow.services.notification_service import NotificationService
    from deal_escrow.settlement import SettlementRegistry


def settlement_linkage(deal: Deal) -> SettlementLinkage:
    """Rebuild the linkage of a deal from its persisted columns."""
    kind = SettlementKind(deal.settlement_kind)
    if kind == SettlementKind.LEDGER_IOU:
        return SettlementLinkage(
            kind=kind,
            mint_tx_hash=deal.mint_tx_hash or "",
            vault_address=deal.xrpl_vault_address,
            borrower_address=deal.xrpl_borrower_address,
            sealed_vault_seed=deal.xrpl_vault_seed_sealed,
            sealed_borrower_seed=deal.xrpl_borrower_seed_sealed,
        )
    return SettlementLinkage(
        kind=kind,
        mint_tx_hash=deal.mint_tx_hash or "",
        nft_id=deal.nft_id,
        vault_address=deal.vault_address,
    )


class DealServiceBase:
    """Repositories, collaborators and guards common to deal use cases."""

    def __init__(
        self,
        session: AsyncSession,
        registry: SettlementRegistry,
        notifier: NotificationService,
        finance_app: FinanceAppClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._deal_repo = DealRepository(session)
        self._user_repo = UserRepository(session)
        self._job_repo = LogSyncJobRepository(session)
        self._log_repo = DealLogRepository(session)
        self._registry = registry
        self._notifier = notifier
        self._finance_app = finance_app
        self._settings = settings or get_settings()

    async def _get_deal_or_raise(self, deal_id: uuid.UUID, *, for_update: bool = False) -> Deal:
        deal = await self._deal_repo.get_by_id(deal_id, for_update=for_update)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        return deal

    def _fire_transition(self, deal: Deal, event_name: str, **event_kwargs) -> str:
        """Validate a deal transition and return the resulting status.

        Raises InvalidDealStateError if the transition is illegal.
        """
        try:
            return validate_transition(deal.status, event_name, **event_kwargs)
        except TransitionNotAllowed as err:
            raise InvalidDealStateError(
                f"Cannot {event_name.replace('_', ' ')} from {deal.status}",
                deal.status,
            ) from err

    def _fire_milestone_transition(
        self,
        milestone: Milestone,
        event_name: str,
        message: str,
    ) -> str:
        sm = MilestoneApprovalMachine(current_status=milestone.approval_status)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed as err:
            raise InvalidMilestoneTransitionError(message, milestone.approval_status) from err
        return sm.status

    async def _notify(
        self,
        event: NotificationEvent,
        deal: Deal,
        actor: User | None,
        *,
        recipients: list[str] | None = None,
        milestone: Milestone | None = None,
    ) -> None:
        actor_email = actor.email if actor is not None else None
        if recipients is None:
            recipients = notification_recipients(deal, exclude_email=actor_email)
        await self._notifier.send(
            event,
            recipients,
            deal,
            actor_email=actor_email,
            milestone=milestone,
        )
