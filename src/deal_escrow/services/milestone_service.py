"""Milestone Service: review cycle, payouts and milestone documents.

Only the current milestone (index == deal.current_milestone) is actionable.
Suppliers submit it for review; buyers approve (releasing funds through the
deal's settlement backend) or deny it. Approving milestone 6 finishes the
deal. Advancing the cursor is a separate, signature-gated operation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from deal_escrow.domain.authorization import (
    check_deal_access,
    check_deal_buyer,
    check_deal_supplier,
)
from deal_escrow.domain.enums import (
    MilestoneStatus,
    NotificationEvent,
    SettlementKind,
)
from deal_escrow.domain.exceptions import (
    DocumentAlreadySeenError,
    DocumentNotFoundError,
    EmptyUpdateError,
    ForbiddenError,
    InternalServerError,
    InvalidSignatureError,
    MilestoneNotFoundError,
    NotCurrentMilestoneError,
    SettlementNotLinkedError,
    WrongNextMilestoneError,
)
from deal_escrow.domain.milestones import approval_message, is_final_milestone
from deal_escrow.infrastructure.database.orm_models import DealDocument
from deal_escrow.logging_config import get_logger
from deal_escrow.services.base import DealServiceBase, settlement_linkage
from deal_escrow.settlement.evm import verify_signed_message

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from deal_escrow.infrastructure.database.orm_models import Deal, Milestone, User

logger = get_logger(__name__)


class MilestoneService(DealServiceBase):
    """Manages milestone review and fund release."""

    def __init__(
        self,
        *args,
        signature_verifier: Callable[[str, str, str], bool] = verify_signed_message,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._verify_signature = signature_verifier

    # ------------------------------------------------------------------
    # Cursor advance (signature-gated)
    # ------------------------------------------------------------------

    async def update_current_milestone(
        self,
        deal_id: uuid.UUID,
        next_index: int,
        signature: str,
        user: User,
    ) -> Deal:
        """Pay milestone ``next_index - 1`` and move the cursor to ``next_index``."""
        deal = await self._get_deal_or_raise(deal_id, for_update=True)
        check_deal_buyer(
            deal, user.id, "User not authorized to update the current milestone for this deal"
        )
        if not deal.has_settlement_linkage:
            raise SettlementNotLinkedError()

        expected = deal.current_milestone + 1
        if next_index != expected or not 0 <= next_index < len(deal.milestones):
            raise WrongNextMilestoneError(expected)

        message = approval_message(next_index, self._signature_reference(deal))
        if not user.wallet_address or not self._verify_signature(
            user.wallet_address, message, signature
        ):
            raise InvalidSignatureError()

        release = await self._registry.for_kind(deal.settlement_kind).release_milestone(
            settlement_linkage(deal), next_index - 1, deal.milestone_percentages
        )
        logger.info(
            "milestone.released",
            deal_id=str(deal_id),
            milestone_index=next_index - 1,
            tx_hash=release.tx_hash,
            amount=str(release.amount) if release.amount is not None else None,
        )

        deal.current_milestone = next_index
        current = deal.milestones[next_index]
        current.status = MilestoneStatus.IN_PROGRESS.value
        await self._deal_repo.save(deal)

        await self._notify(NotificationEvent.MILESTONE_APPROVED, deal, user, milestone=current)
        return deal

    # ------------------------------------------------------------------
    # Review cycle
    # ------------------------------------------------------------------

    async def submit_milestone_review_request(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        user: User,
    ) -> Milestone:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_supplier(deal, user.id, "Only supplier can submit milestone review request")
        milestone = self._current_milestone_or_raise(deal, milestone_id)

        milestone.approval_status = self._fire_milestone_transition(
            milestone, "review_requested", "Milestone is not pending or denied"
        )
        await self._deal_repo.save(deal)
        logger.info("milestone.review_requested", deal_id=str(deal_id), index=milestone.position)

        await self._notify(
            NotificationEvent.MILESTONE_APPROVAL_REQUESTED,
            deal,
            user,
            recipients=[b.email for b in deal.buyers],
            milestone=milestone,
        )
        return milestone

    async def approve_milestone(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        user: User,
    ) -> Milestone:
        """Approve the submitted current milestone and release its payout."""
        deal = await self._get_deal_or_raise(deal_id, for_update=True)
        if not deal.has_settlement_linkage:
            raise SettlementNotLinkedError()
        check_deal_buyer(deal, user.id, "Only buyer can approve milestone")
        milestone = self._current_milestone_or_raise(deal, milestone_id)

        approval_status = self._fire_milestone_transition(
            milestone, "buyer_approves", "Milestone review was not submitted"
        )
        finishing = is_final_milestone(milestone.position)
        new_deal_status = (
            self._fire_transition(deal, "final_milestone_approved") if finishing else deal.status
        )

        release = await self._registry.for_kind(deal.settlement_kind).release_milestone(
            settlement_linkage(deal), milestone.position, deal.milestone_percentages
        )
        logger.info(
            "milestone.released",
            deal_id=str(deal_id),
            milestone_index=milestone.position,
            tx_hash=release.tx_hash,
            amount=str(release.amount) if release.amount is not None else None,
        )

        milestone.approval_status = approval_status
        milestone.status = MilestoneStatus.COMPLETED.value
        deal.status = new_deal_status
        await self._deal_repo.save(deal)

        if deal.is_published and self._finance_app is not None:
            try:
                await self._finance_app.update_milestone(deal, milestone)
            except InternalServerError as exc:
                logger.warning(
                    "milestone.finance_update_failed",
                    deal_id=str(deal_id),
                    index=milestone.position,
                    error=exc.message,
                )

        await self._notify(NotificationEvent.MILESTONE_APPROVED, deal, user, milestone=milestone)
        if finishing:
            logger.info("deal.finished", deal_id=str(deal_id))
            await self._notify(NotificationEvent.DEAL_COMPLETED, deal, user)
        return milestone

    async def deny_milestone(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        user: User,
    ) -> Milestone:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_buyer(deal, user.id, "Only buyer can deny milestone")
        milestone = self._current_milestone_or_raise(deal, milestone_id)

        milestone.approval_status = self._fire_milestone_transition(
            milestone, "buyer_denies", "Milestone review was not submitted"
        )
        await self._deal_repo.save(deal)
        logger.info("milestone.denied", deal_id=str(deal_id), index=milestone.position)

        await self._notify(NotificationEvent.MILESTONE_DENIED, deal, user, milestone=milestone)
        return milestone

    # ------------------------------------------------------------------
    # Milestone documents
    # ------------------------------------------------------------------

    async def add_milestone_document(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        user: User,
        url: str,
        description: str | None = None,
        publicly_visible: bool = False,
    ) -> DealDocument:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_supplier(deal, user.id, "You are not allowed to upload documents for this deal")
        milestone = self._writable_milestone_or_raise(
            deal, milestone_id, "You are not allowed to upload documents for this milestone"
        )

        document = DealDocument(
            deal_id=deal.id,
            url=url,
            description=description,
            publicly_visible=publicly_visible,
            seen_by_users=[str(user.id)],
        )
        milestone.docs.append(document)
        await self._deal_repo.save(deal)
        logger.info(
            "milestone.document_added",
            deal_id=str(deal_id),
            index=milestone.position,
            document_id=str(document.id),
        )

        await self._notify(
            NotificationEvent.MILESTONE_DOCUMENT_UPLOADED, deal, user, milestone=milestone
        )
        return document

    async def update_milestone_document(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        document_id: uuid.UUID,
        changes: dict,
        user: User,
    ) -> DealDocument:
        """Change a document's description or visibility."""
        changes = {k: v for k, v in changes.items() if k in ("description", "publicly_visible")}
        if not changes:
            raise EmptyUpdateError()

        deal = await self._get_deal_or_raise(deal_id)
        check_deal_supplier(deal, user.id, "You are not allowed to update documents in this deal")
        milestone = self._writable_milestone_or_raise(
            deal, milestone_id, "You are not allowed to update documents in this milestone"
        )
        document = self._document_or_raise(milestone, document_id)

        for field, value in changes.items():
            setattr(document, field, value)
        await self._deal_repo.save(deal)

        await self._notify(
            NotificationEvent.MILESTONE_DOCUMENT_UPLOADED, deal, user, milestone=milestone
        )
        return document

    async def set_milestone_document_as_viewed(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        document_id: uuid.UUID,
        user: User,
    ) -> DealDocument:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_access(deal, user.id)
        milestone = self._milestone_or_raise(deal, milestone_id)
        document = self._document_or_raise(milestone, document_id)
        if document.seen_by(user.id):
            raise DocumentAlreadySeenError()

        # Reassign so the JSON column is flagged as changed.
        document.seen_by_users = [*(document.seen_by_users or []), str(user.id)]
        await self._deal_repo.save(deal)
        return document

    async def remove_milestone_document(
        self,
        deal_id: uuid.UUID,
        milestone_id: uuid.UUID,
        document_id: uuid.UUID,
        user: User,
    ) -> None:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_supplier(deal, user.id, "You are not allowed to remove documents from this deal")
        milestone = self._milestone_or_raise(deal, milestone_id)
        document = self._document_or_raise(milestone, document_id)
        milestone.docs.remove(document)
        await self._deal_repo.save(deal)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _signature_reference(deal: Deal) -> str | int:
        if deal.settlement_kind == SettlementKind.EVM_CONTRACT.value and deal.nft_id is not None:
            return deal.nft_id
        return str(deal.id)

    @staticmethod
    def _milestone_or_raise(deal: Deal, milestone_id: uuid.UUID) -> Milestone:
        milestone = next((m for m in deal.milestones if m.id == milestone_id), None)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    def _current_milestone_or_raise(self, deal: Deal, milestone_id: uuid.UUID) -> Milestone:
        milestone = self._milestone_or_raise(deal, milestone_id)
        if milestone.position != deal.current_milestone:
            raise NotCurrentMilestoneError()
        return milestone

    @staticmethod
    def _writable_milestone_or_raise(
        deal: Deal,
        milestone_id: uuid.UUID,
        message: str,
    ) -> Milestone:
        """Documents may only change on the current milestone."""
        if deal.current_milestone >= len(deal.milestones):
            raise ForbiddenError(message)
        current = deal.milestones[deal.current_milestone]
        if current.id != milestone_id:
            raise ForbiddenError(message)
        return current

    @staticmethod
    def _document_or_raise(milestone: Milestone, document_id: uuid.UUID) -> DealDocument:
        document = next((d for d in milestone.docs if d.id == document_id), None)
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        return document

