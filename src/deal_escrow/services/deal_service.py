"""Deal Service: core business logic for the deal lifecycle.

This is the application layer that coordinates between:
    - Domain state machine and authorization predicates (guards)
    - Repositories (data access)
    - Settlement registry (one backend per deal, by settlement_kind)
    - Notifications and the finance reporting app

Confirmation is the only operation that opens settlement. It locks the deal
row and moves PROPOSAL -> CONFIRMED with a compare-and-set, so concurrent
approvals confirm (and mint) exactly once.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from deal_escrow.domain.authorization import (
    all_participants_approved,
    check_deal_access,
    check_deal_buyer,
    check_deal_supplier,
)
from deal_escrow.domain.enums import (
    AccountType,
    DealStatus,
    LogSyncJobType,
    MilestoneApprovalStatus,
    MilestoneStatus,
    NotificationEvent,
    ParticipantRole,
    SettlementKind,
    SettlementState,
)
from deal_escrow.domain.exceptions import (
    BadRequestError,
    ConfirmDealError,
    DocumentNotFoundError,
    EmptyUpdateError,
    ForbiddenError,
    InternalServerError,
    InvalidDealStateError,
    MissingConfigurationError,
    PublishDealError,
    RepayDealError,
    SettlementAlreadyLinkedError,
    UnauthorizedError,
)
from deal_escrow.domain.settlement_protocol import DealTerms, SettlementLinkage
from deal_escrow.domain.state_machine import DealStateMachine
from deal_escrow.infrastructure.database.orm_models import (
    Deal,
    DealDocument,
    DealParticipant,
    LogSyncJob,
    Milestone,
)
from deal_escrow.logging_config import get_logger
from deal_escrow.services.base import DealServiceBase, settlement_linkage

if TYPE_CHECKING:
    import uuid

    from deal_escrow.infrastructure.database.orm_models import DealLog, User
    from deal_escrow.schemas.deal import CreateDealRequest, ParticipantInput

logger = get_logger(__name__)

# Errors that describe the caller's request; they surface unchanged from the
# operations that otherwise wrap failures in a generic error.
_CALLER_ERRORS = (BadRequestError, UnauthorizedError, ForbiddenError)

_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "cover_image_url",
        "origin",
        "destination",
        "transport",
        "quantity",
        "total_value",
        "shipping_start_date",
        "expected_shipping_end_date",
        "investment_amount",
        "buyer_company",
        "supplier_company",
    }
)


def _build_milestones(items: list[dict]) -> list[Milestone]:
    return [
        Milestone(
            position=position,
            description=item.get("description"),
            funds_distribution=item["funds_distribution"],
            status=(
                MilestoneStatus.IN_PROGRESS.value
                if position == 0
                else MilestoneStatus.NOT_COMPLETED.value
            ),
            approval_status=MilestoneApprovalStatus.PENDING.value,
            docs=[],
        )
        for position, item in enumerate(items)
    ]


class DealService(DealServiceBase):
    """Manages the deal lifecycle."""

    @property
    def page_size(self) -> int:
        return self._settings.page_size

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def resolve_participants(
        self,
        role: ParticipantRole,
        items: list[ParticipantInput],
    ) -> list[DealParticipant]:
        """Build participant entries, linking emails of registered users."""
        users = await self._user_repo.get_by_emails([item.email for item in items])
        participants = []
        for position, item in enumerate(items):
            user = users.get(item.email)
            participants.append(
                DealParticipant(
                    role=role.value,
                    position=position,
                    email=item.email,
                    user_id=user.id if user else None,
                    wallet_address=(user.wallet_address if user else None) or item.wallet_address,
                )
            )
        return participants

    async def create_deal(self, user: User, payload: CreateDealRequest) -> Deal:
        """Create a new deal in PROPOSAL state, pre-approved by its creator."""
        participants = [
            *await self.resolve_participants(ParticipantRole.BUYER, payload.buyers),
            *await self.resolve_participants(ParticipantRole.SUPPLIER, payload.suppliers),
        ]
        for participant in participants:
            if participant.user_id == user.id:
                participant.approved = True
            else:
                participant.is_new = True

        data = payload.model_dump(exclude={"buyers", "suppliers", "milestones"})
        deal = Deal(
            **data,
            status=DealStatus.PROPOSAL.value,
            settlement_kind=self._registry.default_kind.value,
            settlement_state=SettlementState.NONE.value,
            participants=participants,
            milestones=_build_milestones([m.model_dump() for m in payload.milestones]),
            docs=[],
        )

        company_field = {
            AccountType.BUYER.value: "buyer_company",
            AccountType.SUPPLIER.value: "supplier_company",
        }.get(user.account_type)
        if company_field and data[company_field] is not None:
            user.company = data[company_field]
        await self._user_repo.save(user)

        deal = await self._deal_repo.create(deal)
        logger.info(
            "deal.created",
            deal_id=str(deal.id),
            settlement_kind=deal.settlement_kind,
            participants=len(participants),
        )

        unregistered = [p.email for p in participants if p.user_id is None]
        if unregistered:
            await self._notify(
                NotificationEvent.INVITE_TO_SIGNUP, deal, user, recipients=unregistered
            )
        await self._notify(NotificationEvent.NEW_PROPOSAL, deal, user)
        return await self._get_deal_or_raise(deal.id)

    # ------------------------------------------------------------------
    # Confirmation and settlement
    # ------------------------------------------------------------------

    async def confirm_deal(self, deal_id: uuid.UUID, user: User) -> Deal:
        """Record the caller's approval; confirm and open settlement when unanimous."""
        try:
            deal = await self._get_deal_or_raise(deal_id, for_update=True)
            if deal.status != DealStatus.PROPOSAL.value:
                raise InvalidDealStateError("Deal is not in proposal status", deal.status)
            check_deal_access(deal, user.id, "You are not allowed to update this deal")

            for entry in deal.entries_for(user.id):
                entry.approved = True
                entry.is_new = False
            await self._deal_repo.save(deal)

            if all_participants_approved(deal):
                await self._confirm(deal)

            await self._notify(NotificationEvent.DEAL_CONFIRMED, deal, user)
            return deal
        except _CALLER_ERRORS:
            raise
        except Exception as exc:
            logger.exception("deal.confirm_failed", deal_id=str(deal_id), error=str(exc))
            raise ConfirmDealError() from exc

    async def _confirm(self, deal: Deal) -> None:
        approvals = [p.approved for p in deal.participants]
        self._fire_transition(deal, "all_parties_approved", approvals=approvals)
        if not await self._deal_repo.compare_and_set_status(
            deal, DealStatus.PROPOSAL, DealStatus.CONFIRMED
        ):
            raise InvalidDealStateError("Deal is not in proposal status", deal.status)
        logger.info("deal.confirmed", deal_id=str(deal.id))

        if not (self._settings.automatic_deals_acceptance and deal.buyers):
            return

        deal.settlement_state = SettlementState.PENDING.value
        await self._deal_repo.save(deal)
        try:
            await self._open_settlement(deal)
        except InternalServerError as exc:
            # Deal stays CONFIRMED; retry_settlement picks it up.
            logger.error(
                "deal.settlement_pending",
                deal_id=str(deal.id),
                settlement_kind=deal.settlement_kind,
                error=exc.message,
            )

    async def retry_settlement(self, deal_id: uuid.UUID, user: User) -> Deal:
        """Re-run the settlement open of a confirmed deal left PENDING."""
        deal = await self._get_deal_or_raise(deal_id, for_update=True)
        check_deal_buyer(deal, user.id)
        if (
            deal.status != DealStatus.CONFIRMED.value
            or deal.settlement_state != SettlementState.PENDING.value
        ):
            raise InvalidDealStateError("Deal has no pending settlement", deal.status)
        await self._open_settlement(deal)
        return deal

    async def _open_settlement(self, deal: Deal) -> SettlementLinkage:
        backend = self._registry.for_kind(deal.settlement_kind)
        first_buyer = deal.buyers[0]
        buyer = await self._user_repo.get_by_email(first_buyer.email)
        terms = DealTerms(
            deal_id=str(deal.id),
            milestone_percentages=deal.milestone_percentages,
            investment_amount=deal.investment_amount,
            buyer_wallet=(buyer.wallet_address if buyer else None) or first_buyer.wallet_address,
        )
        logger.info("deal.settlement_opening", deal_id=str(deal.id), kind=deal.settlement_kind)
        linkage = await backend.open_deal(terms)

        if not await self._deal_repo.attach_settlement(deal, linkage):
            raise SettlementAlreadyLinkedError(str(deal.id))
        if (
            linkage.kind == SettlementKind.EVM_CONTRACT
            and linkage.vault_address
            and linkage.nft_id is not None
        ):
            await self._job_repo.register(
                LogSyncJob(
                    type=LogSyncJobType.VAULT.value,
                    contract=linkage.vault_address,
                    last_block=linkage.log_sync_from_block or 0,
                    active=True,
                    nft_id=linkage.nft_id,
                )
            )
        logger.info("deal.settlement_opened", deal_id=str(deal.id), **linkage.to_dict())
        return linkage

    # ------------------------------------------------------------------
    # Proposal edits
    # ------------------------------------------------------------------

    async def cancel_deal(self, deal_id: uuid.UUID, user: User) -> Deal:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_access(deal, user.id, "You are not allowed to update this deal")
        if deal.status != DealStatus.PROPOSAL.value:
            raise InvalidDealStateError("Deal cannot be canceled", deal.status)

        deal.status = self._fire_transition(deal, "proposal_cancelled")
        await self._deal_repo.save(deal)
        logger.info("deal.cancelled", deal_id=str(deal_id), by=str(user.id))

        await self._notify(NotificationEvent.PROPOSAL_CANCELLED, deal, user)
        return deal

    async def update_deal(self, deal_id: uuid.UUID, changes: dict, user: User) -> Deal:
        """Apply a partial update; every other participant must approve again."""
        if not changes:
            raise EmptyUpdateError()

        deal = await self._get_deal_or_raise(deal_id)
        check_deal_access(deal, user.id, "You are not allowed to update this deal")
        if deal.status != DealStatus.PROPOSAL.value:
            raise InvalidDealStateError("Deal cannot be updated", deal.status)
        self._fire_transition(deal, "proposal_edited")

        changes = dict(changes)
        milestones = changes.pop("milestones", None)
        for field, value in changes.items():
            if field in _UPDATABLE_FIELDS:
                setattr(deal, field, value)
        if milestones is not None:
            deal.milestones = _build_milestones(milestones)
        for participant in deal.participants:
            participant.approved = participant.user_id == user.id

        await self._deal_repo.save(deal)
        logger.info("deal.updated", deal_id=str(deal_id), fields=sorted(changes))

        await self._notify(NotificationEvent.CHANGES_IN_PROPOSAL, deal, user)
        return await self._get_deal_or_raise(deal_id)

    # ------------------------------------------------------------------
    # Repayment and publication
    # ------------------------------------------------------------------

    async def set_deal_as_repaid(self, deal_id: uuid.UUID, user: User) -> Deal:
        """Close a finished deal: stop its log sync and complete it on the backend."""
        if user.account_type != AccountType.BUYER.value:
            raise UnauthorizedError("You are not allowed to set this deal as repaid")

        try:
            deal = await self._get_deal_or_raise(deal_id, for_update=True)
            if deal.status != DealStatus.FINISHED.value:
                raise InvalidDealStateError("Deal is not finished", deal.status)
            new_status = self._fire_transition(deal, "repayment_recorded")

            if deal.vault_address:
                await self._job_repo.deactivate(deal.vault_address)
            if deal.has_settlement_linkage:
                backend = self._registry.for_kind(deal.settlement_kind)
                tx_hash = await backend.complete_deal(settlement_linkage(deal))
                logger.info("deal.settlement_completed", deal_id=str(deal_id), tx_hash=tx_hash)

            deal.status = new_status
            deal.settlement_state = SettlementState.COMPLETED.value
            await self._deal_repo.save(deal)
        except _CALLER_ERRORS:
            raise
        except Exception as exc:
            logger.exception("deal.repay_failed", deal_id=str(deal_id), error=str(exc))
            raise RepayDealError() from exc

        logger.info("deal.repaid", deal_id=str(deal_id))
        return deal

    async def publish_deal(self, deal_id: uuid.UUID, user: User) -> Deal:
        """Push a deal and its vault activity to the finance reporting app."""
        if user.account_type != AccountType.BUYER.value:
            raise UnauthorizedError("You are not allowed to publish this deal")
        deal = await self._get_deal_or_raise(deal_id)

        try:
            if self._finance_app is None:
                raise MissingConfigurationError("FINANCE_APP_URL")
            await self._finance_app.publish_shipment(deal)
            for log in await self._logs_of(deal):
                try:
                    await self._finance_app.create_activity(deal, log)
                except InternalServerError as exc:
                    logger.warning(
                        "deal.publish_activity_failed",
                        deal_id=str(deal_id),
                        tx_hash=log.tx_hash,
                        error=exc.message,
                    )
        except InternalServerError as exc:
            logger.error("deal.publish_failed", deal_id=str(deal_id), error=exc.message)
            raise PublishDealError() from exc

        deal.is_published = True
        await self._deal_repo.save(deal)
        logger.info("deal.published", deal_id=str(deal_id))
        return deal

    # ------------------------------------------------------------------
    # Viewer state and documents
    # ------------------------------------------------------------------

    async def set_deal_as_viewed(self, deal_id: uuid.UUID, user: User) -> Deal:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_access(deal, user.id, "You are not allowed to update this deal")
        for entry in deal.entries_for(user.id):
            entry.is_new = False
        await self._deal_repo.save(deal)
        return deal

    async def set_documents_as_viewed(self, deal_id: uuid.UUID, user: User) -> Deal:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_access(deal, user.id, "You are not allowed to update this deal")
        deal.new_documents = False
        await self._deal_repo.save(deal)
        return deal

    async def add_deal_document(
        self,
        deal_id: uuid.UUID,
        user: User,
        url: str,
        description: str | None = None,
        publicly_visible: bool = False,
    ) -> DealDocument:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_supplier(deal, user.id, "You are not allowed to upload documents for this deal")

        document = DealDocument(
            url=url,
            description=description,
            publicly_visible=publicly_visible,
            seen_by_users=[str(user.id)],
        )
        deal.docs.append(document)
        deal.new_documents = True
        await self._deal_repo.save(deal)
        logger.info("deal.document_added", deal_id=str(deal_id), document_id=str(document.id))

        await self._notify(NotificationEvent.NEW_DOCUMENT_UPLOADED, deal, user)
        return document

    async def remove_deal_document(
        self,
        deal_id: uuid.UUID,
        document_id: uuid.UUID,
        user: User,
    ) -> None:
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_supplier(deal, user.id, "You are not allowed to delete documents")
        document = next((d for d in deal.docs if d.id == document_id), None)
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        deal.docs.remove(document)
        await self._deal_repo.save(deal)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def delete_deal(self, deal_id: uuid.UUID) -> None:
        deal = await self._get_deal_or_raise(deal_id)
        await self._deal_repo.delete(deal)
        logger.info("deal.deleted", deal_id=str(deal_id))

    async def assign_user_to_deals(self, user: User) -> int:
        """Link participant entries registered under the user's email."""
        linked = await self._deal_repo.assign_user(user.id, user.email, user.wallet_address)
        logger.info("deal.user_assigned", user_id=str(user.id), entries=linked)
        return linked

    async def assign_nft_to_deal(
        self,
        deal_id: uuid.UUID,
        nft_id: int,
        mint_tx_hash: str,
        vault_address: str,
    ) -> Deal:
        """Backfill an EVM linkage minted outside the confirmation flow."""
        deal = await self._get_deal_or_raise(deal_id, for_update=True)
        if deal.settlement_kind != SettlementKind.EVM_CONTRACT.value:
            raise InvalidDealStateError(
                "Deal does not settle through the EVM contract", deal.status
            )
        linkage = SettlementLinkage(
            kind=SettlementKind.EVM_CONTRACT,
            mint_tx_hash=mint_tx_hash,
            nft_id=nft_id,
            vault_address=vault_address,
        )
        if not await self._deal_repo.attach_settlement(deal, linkage):
            raise SettlementAlreadyLinkedError(str(deal_id))
        logger.info("deal.nft_assigned", deal_id=str(deal_id), nft_id=nft_id)
        return deal

    async def assign_deposit_contract(self, deal_id: uuid.UUID, address: str) -> Deal:
        """Set the EVM contract whose stablecoin deposits are bridged to this ledger deal."""
        deal = await self._get_deal_or_raise(deal_id)
        if deal.settlement_kind != SettlementKind.LEDGER_IOU.value:
            raise InvalidDealStateError("Only ledger deals accept bridged deposits", deal.status)
        deal.deposit_contract_address = address
        await self._deal_repo.save(deal)
        logger.info("deal.deposit_contract_assigned", deal_id=str(deal_id), address=address)
        return deal

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def find_deal_by_id(self, deal_id: uuid.UUID) -> Deal:
        return await self._get_deal_or_raise(deal_id)

    async def find_user_deal(self, deal_id: uuid.UUID, user: User) -> Deal:
        """A deal the user participates in; per-viewer flags are rendered by the API."""
        deal = await self._get_deal_or_raise(deal_id)
        check_deal_access(deal, user.id)
        return deal

    async def find_deals_by_user(
        self,
        user: User,
        status: DealStatus | None = None,
    ) -> list[Deal]:
        return await self._deal_repo.find_by_user(user.id, status)

    async def paginate(
        self,
        offset: int = 0,
        status: DealStatus | None = None,
        emails_search: str | None = None,
        search: str | None = None,
    ) -> tuple[list[Deal], int]:
        return await self._deal_repo.paginate(
            offset=offset,
            limit=self._settings.page_size,
            status=status,
            emails_search=emails_search,
            search=search,
        )

    async def find_deal_logs(self, deal_id: uuid.UUID) -> list[DealLog]:
        deal = await self._get_deal_or_raise(deal_id)
        return await self._logs_of(deal)

    async def get_status(self, deal_id: uuid.UUID) -> dict:
        """Get deal status with allowed events."""
        deal = await self._get_deal_or_raise(deal_id)
        sm = DealStateMachine(current_status=deal.status)
        return {
            "deal_id": deal.id,
            "status": deal.status,
            "settlement_state": deal.settlement_state,
            "current_milestone": deal.current_milestone,
            "allowed_events": sm.get_allowed_events(),
        }

    async def _logs_of(self, deal: Deal) -> list[DealLog]:
        if deal.nft_id is None:
            return []
        return await self._log_repo.find_by_nft_id(deal.nft_id)
