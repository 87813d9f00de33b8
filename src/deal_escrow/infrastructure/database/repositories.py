"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select, update

from deal_escrow.domain.enums import SettlementKind, SettlementState
from deal_escrow.infrastructure.database.orm_models import (
    Deal,
    DealLog,
    DealParticipant,
    LogSyncJob,
    User,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from deal_escrow.domain.enums import DealStatus
    from deal_escrow.domain.settlement_protocol import SettlementLinkage


class DealRepository:
    """Data access for deals and their child rows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, deal: Deal) -> Deal:
        """Insert a new deal together with its participants and milestones."""
        self._session.add(deal)
        await self._session.flush()
        return deal

    async def get_by_id(self, deal_id: uuid.UUID, *, for_update: bool = False) -> Deal | None:
        """Fetch a deal by id, optionally locking its row until the transaction ends."""
        stmt = (
            select(Deal)
            .where(Deal.id == deal_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Deal)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_nft_id(self, nft_id: int) -> Deal | None:
        result = await self._session.execute(select(Deal).where(Deal.nft_id == nft_id))
        return result.scalars().first()

    async def find_by_user(
        self,
        user_id: uuid.UUID,
        status: DealStatus | None = None,
    ) -> list[Deal]:
        """Deals where the user holds any participant entry, newest first."""
        member = select(DealParticipant.deal_id).where(DealParticipant.user_id == user_id)
        stmt = select(Deal).where(Deal.id.in_(member))
        if status is not None:
            stmt = stmt.where(Deal.status == status.value)
        result = await self._session.execute(stmt.order_by(Deal.created_at.desc()))
        return list(result.scalars().all())

    async def paginate(
        self,
        *,
        offset: int,
        limit: int,
        status: DealStatus | None = None,
        emails_search: str | None = None,
        search: str | None = None,
    ) -> tuple[list[Deal], int]:
        """Filter deals by status, name and participant email substrings."""
        stmt = select(Deal)
        if status is not None:
            stmt = stmt.where(Deal.status == status.value)
        if search:
            stmt = stmt.where(Deal.name.ilike(f"%{search}%"))
        if emails_search:
            matching = select(DealParticipant.deal_id).where(
                DealParticipant.email.ilike(f"%{emails_search}%")
            )
            stmt = stmt.where(Deal.id.in_(matching))

        total = await self._session.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await self._session.execute(
            stmt.order_by(Deal.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def save(self, deal: Deal) -> Deal:
        """Flush pending changes on a deal and its children."""
        self._session.add(deal)
        await self._session.flush()
        return deal

    async def delete(self, deal: Deal) -> None:
        await self._session.delete(deal)
        await self._session.flush()

    async def compare_and_set_status(
        self,
        deal: Deal,
        expected: DealStatus,
        new_status: DealStatus,
    ) -> bool:
        """Move ``deal`` to ``new_status`` only if the stored status is still ``expected``.

        Returns False when another transaction changed the status first.
        """
        await self._session.flush()
        result = await self._session.execute(
            update(Deal)
            .where(Deal.id == deal.id, Deal.status == expected.value)
            .values(status=new_status.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(deal, attribute_names=["status", "updated_at"])
        return True

    async def attach_settlement(
        self,
        deal: Deal,
        linkage: SettlementLinkage,
    ) -> bool:
        """Persist a settlement linkage at most once per deal."""
        values: dict = {
            "mint_tx_hash": linkage.mint_tx_hash,
            "settlement_state": SettlementState.ACTIVE.value,
            "updated_at": datetime.now(UTC),
        }
        if linkage.nft_id is not None:
            values["nft_id"] = linkage.nft_id
        if linkage.kind == SettlementKind.LEDGER_IOU:
            values.update(
                xrpl_vault_address=linkage.vault_address,
                xrpl_vault_seed_sealed=linkage.sealed_vault_seed,
                xrpl_borrower_address=linkage.borrower_address,
                xrpl_borrower_seed_sealed=linkage.sealed_borrower_seed,
            )
        elif linkage.vault_address is not None:
            values["vault_address"] = linkage.vault_address

        await self._session.flush()
        result = await self._session.execute(
            update(Deal)
            .where(
                Deal.id == deal.id,
                Deal.mint_tx_hash.is_(None),
                Deal.settlement_state.in_(
                    [SettlementState.NONE.value, SettlementState.PENDING.value]
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(deal, attribute_names=list(values))
        return True

    async def find_bridged_vaults(self) -> dict[str, uuid.UUID]:
        """Map lowercased EVM deposit addresses to ledger deals that can receive them."""
        result = await self._session.execute(
            select(Deal.deposit_contract_address, Deal.id).where(
                Deal.deposit_contract_address.is_not(None),
                Deal.xrpl_vault_address.is_not(None),
            )
        )
        return {address.lower(): deal_id for address, deal_id in result.all()}

    async def assign_user(
        self,
        user_id: uuid.UUID,
        email: str,
        wallet_address: str | None,
    ) -> int:
        """Link every participant entry registered under ``email`` to a user."""
        result = await self._session.execute(
            update(DealParticipant)
            .where(DealParticipant.email == email, DealParticipant.user_id.is_(None))
            .values(user_id=user_id, wallet_address=wallet_address)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class UserRepository:
    """Data access for users."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, user: User) -> User:
        self._session.add(user)
        await self._session.flush()
        return user

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        return await self._session.get(User, user_id)

    async def get_by_email(self, email: str) -> User | None:
        result = await self._session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_by_emails(self, emails: Sequence[str]) -> dict[str, User]:
        if not emails:
            return {}
        result = await self._session.execute(select(User).where(User.email.in_(list(emails))))
        return {user.email: user for user in result.scalars().all()}

    async def get_by_wallet(self, wallet_address: str) -> User | None:
        """Case-insensitive lookup on the EVM wallet address."""
        result = await self._session.execute(
            select(User).where(func.lower(User.wallet_address) == wallet_address.lower())
        )
        return result.scalars().first()

    async def save(self, user: User) -> User:
        self._session.add(user)
        await self._session.flush()
        return user


class LogSyncJobRepository:
    """Data access for vault log-sync jobs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def register(self, job: LogSyncJob) -> LogSyncJob:
        """Insert a job unless one already exists for the contract."""
        result = await self._session.execute(
            select(LogSyncJob).where(func.lower(LogSyncJob.contract) == job.contract.lower())
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing
        self._session.add(job)
        await self._session.flush()
        return job

    async def list_active(self) -> list[LogSyncJob]:
        result = await self._session.execute(
            select(LogSyncJob).where(LogSyncJob.active.is_(True)).order_by(LogSyncJob.nft_id)
        )
        return list(result.scalars().all())

    async def deactivate(self, contract: str) -> int:
        result = await self._session.execute(
            update(LogSyncJob)
            .where(func.lower(LogSyncJob.contract) == contract.lower())
            .values(active=False, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def advance(self, job: LogSyncJob, last_block: int) -> None:
        job.last_block = last_block
        await self._session.flush()


class DealLogRepository:
    """Data access for ingested vault events (append-only)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_many(self, logs: Sequence[DealLog]) -> int:
        """Insert logs not already stored (keyed by tx hash and log index)."""
        if not logs:
            return 0
        keys = {(log.tx_hash, log.log_index) for log in logs}
        result = await self._session.execute(
            select(DealLog.tx_hash, DealLog.log_index).where(
                or_(
                    *(
                        (DealLog.tx_hash == tx_hash) & (DealLog.log_index == log_index)
                        for tx_hash, log_index in keys
                    )
                )
            )
        )
        existing = {(row[0], row[1]) for row in result.all()}
        fresh: dict[tuple[str, int], DealLog] = {}
        for log in logs:
            key = (log.tx_hash, log.log_index)
            if key not in existing:
                fresh.setdefault(key, log)
        self._session.add_all(fresh.values())
        await self._session.flush()
        return len(fresh)

    async def find_by_nft_id(self, nft_id: int) -> list[DealLog]:
        result = await self._session.execute(
            select(DealLog)
            .where(DealLog.nft_id == nft_id)
            .order_by(DealLog.block_number.asc(), DealLog.log_index.asc())
        )
        return list(result.scalars().all())
