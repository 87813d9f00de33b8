"""SQLAlchemy 2.0 ORM models for the Deal Escrow service.

Tables:
    1. users              Registered accounts (buyers, suppliers, investors).
    2. deals              The deal aggregate root and its settlement linkage.
    3. deal_participants  Ordered buyer and supplier entries of a deal.
    4. milestones         Ordered milestones with their review state.
    5. deal_documents     Documents attached to a deal or to one milestone.
    6. log_sync_jobs      Vault contracts whose event logs are being ingested.
    7. deal_logs          Ingested vault events.

Design decisions:
    - UUIDs as primary keys (generic ``Uuid`` so tests can run on SQLite).
    - Decimal for money amounts.
    - JSON columns become JSONB on PostgreSQL.
    - CHECK constraints on status columns and on the milestone cursor.
    - Ledger seeds are only ever stored sealed (see settlement/keyring.py).
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    and_,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, foreign, mapped_column, relationship

from deal_escrow.domain.enums import (
    AccountType,
    DealStatus,
    MilestoneApprovalStatus,
    MilestoneStatus,
    ParticipantRole,
    SettlementKind,
    SettlementState,
    UserRole,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. users
# ---------------------------------------------------------------------------
class User(Base):
    """A registered account."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    account_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccountType.BUYER.value,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=UserRole.REGULAR.value)
    wallet_address: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="EVM wallet used to sign milestone approvals and to deposit",
    )
    company: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)

    # --- Ledger investor wallet ---
    xrpl_wallet_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    xrpl_wallet_seed_sealed: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Fernet token of the investor's ledger seed",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "account_type IN ('BUYER', 'SUPPLIER', 'INVESTOR')",
            name="ck_user_valid_account_type",
        ),
        Index("idx_user_wallet", "wallet_address"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} type={self.account_type}>"


# ---------------------------------------------------------------------------
# 2. deals
# ---------------------------------------------------------------------------
class Deal(Base):
    """A trade-finance deal between buyers and suppliers."""

    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Description ---
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    cover_image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    # --- Shipping ---
    origin: Mapped[str | None] = mapped_column(String(120), nullable=True)
    destination: Mapped[str | None] = mapped_column(String(120), nullable=True)
    transport: Mapped[str | None] = mapped_column(String(60), nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    total_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    shipping_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_shipping_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # --- Companies ---
    buyer_company: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    supplier_company: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # --- Lifecycle ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DealStatus.PROPOSAL.value,
        comment="Current lifecycle state (guarded by DealStateMachine)",
    )
    current_milestone: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Index of the milestone currently under way",
    )
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    new_documents: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Reporting only ---
    investment_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        nullable=False,
        default=Decimal("0"),
        comment="Maximum amount the deal may raise",
    )
    revenue: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    net_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    roi: Mapped[Decimal | None] = mapped_column(Numeric(9, 4), nullable=True)

    # --- Settlement ---
    settlement_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SettlementKind.EVM_CONTRACT.value,
        comment="Backend fixed at creation; all settlement calls dispatch on it",
    )
    settlement_state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SettlementState.NONE.value,
    )
    mint_tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)

    # EVM linkage
    nft_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    vault_address: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="Per-deal vault contract deployed by the deals manager",
    )

    # Ledger linkage
    xrpl_vault_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    xrpl_vault_seed_sealed: Mapped[str | None] = mapped_column(Text, nullable=True)
    xrpl_borrower_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    xrpl_borrower_seed_sealed: Mapped[str | None] = mapped_column(Text, nullable=True)
    deposit_contract_address: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="EVM address receiving stablecoin deposits bridged to the ledger vault",
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Relationships ---
    participants: Mapped[list[DealParticipant]] = relationship(
        "DealParticipant",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by=lambda: [DealParticipant.role, DealParticipant.position],
        lazy="selectin",
    )
    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        back_populates="deal",
        cascade="all, delete-orphan",
        order_by="Milestone.position",
        lazy="selectin",
    )
    docs: Mapped[list[DealDocument]] = relationship(
        "DealDocument",
        primaryjoin=lambda: and_(
            Deal.id == foreign(DealDocument.deal_id),
            DealDocument.milestone_id.is_(None),
        ),
        cascade="all, delete-orphan",
        order_by="DealDocument.created_at",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PROPOSAL', 'CONFIRMED', 'FINISHED', 'REPAID', 'CANCELLED')",
            name="ck_deal_valid_status",
        ),
        CheckConstraint(
            "settlement_kind IN ('EVM_CONTRACT', 'LEDGER_IOU')",
            name="ck_deal_valid_settlement_kind",
        ),
        CheckConstraint("current_milestone >= 0", name="ck_deal_milestone_cursor"),
        Index("idx_deal_status", "status"),
        Index("idx_deal_nft", "nft_id"),
        Index("idx_deal_created_at", "created_at"),
    )

    # --- Participant views ---

    @property
    def buyers(self) -> list[DealParticipant]:
        return [p for p in self.participants if p.role == ParticipantRole.BUYER.value]

    @property
    def suppliers(self) -> list[DealParticipant]:
        return [p for p in self.participants if p.role == ParticipantRole.SUPPLIER.value]

    def entries_for(self, user_id: uuid.UUID) -> list[DealParticipant]:
        """All participant entries of a user (a user may be buyer and supplier)."""
        return [p for p in self.participants if p.user_id == user_id]

    @property
    def milestone_percentages(self) -> list[int]:
        return [m.funds_distribution for m in self.milestones]

    @property
    def has_settlement_linkage(self) -> bool:
        return self.mint_tx_hash is not None

    def __repr__(self) -> str:
        return (
            f"<Deal id={self.id} status={self.status} "
            f"milestone={self.current_milestone} kind={self.settlement_kind}>"
        )


# ---------------------------------------------------------------------------
# 3. deal_participants
# ---------------------------------------------------------------------------
class DealParticipant(Base):
    """One buyer or supplier entry. ``user_id`` is empty until they register."""

    __tablename__ = "deal_participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(10), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_new: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Deal not yet opened by this participant",
    )

    deal: Mapped[Deal] = relationship("Deal", back_populates="participants")

    __table_args__ = (
        CheckConstraint("role IN ('BUYER', 'SUPPLIER')", name="ck_participant_valid_role"),
        Index("idx_participant_deal", "deal_id"),
        Index("idx_participant_user", "user_id"),
        Index("idx_participant_email", "email"),
    )

    def __repr__(self) -> str:
        return f"<DealParticipant {self.role} {self.email} approved={self.approved}>"


# ---------------------------------------------------------------------------
# 4. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    funds_distribution: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Percentage of the vault balance released at this milestone",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MilestoneStatus.NOT_COMPLETED.value,
    )
    approval_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MilestoneApprovalStatus.PENDING.value,
        comment="Review state (guarded by MilestoneApprovalMachine)",
    )

    deal: Mapped[Deal] = relationship("Deal", back_populates="milestones")
    docs: Mapped[list[DealDocument]] = relationship(
        "DealDocument",
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="DealDocument.created_at",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "approval_status IN ('PENDING', 'SUBMITTED', 'APPROVED', 'DENIED')",
            name="ck_milestone_valid_approval_status",
        ),
        CheckConstraint(
            "funds_distribution >= 0 AND funds_distribution <= 100",
            name="ck_milestone_percentage_bounds",
        ),
        Index("idx_milestone_deal", "deal_id", "position"),
    )

    def __repr__(self) -> str:
        return f"<Milestone #{self.position} {self.approval_status} {self.funds_distribution}%>"


# ---------------------------------------------------------------------------
# 5. deal_documents
# ---------------------------------------------------------------------------
class DealDocument(Base):
    """A document uploaded elsewhere and attached by URL."""

    __tablename__ = "deal_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deals.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=True,
        comment="Null for deal-level documents",
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    publicly_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seen_by_users: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="User ids (as strings) that have opened the document",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    milestone: Mapped[Milestone | None] = relationship("Milestone", back_populates="docs")

    __table_args__ = (Index("idx_document_deal", "deal_id"),)

    def seen_by(self, user_id: uuid.UUID) -> bool:
        return str(user_id) in (self.seen_by_users or [])


# ---------------------------------------------------------------------------
# 6. log_sync_jobs
# ---------------------------------------------------------------------------
class LogSyncJob(Base):
    __tablename__ = "log_sync_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    contract: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    nft_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_log_sync_active", "active"),)


# ---------------------------------------------------------------------------
# 7. deal_logs
# ---------------------------------------------------------------------------
class DealLog(Base):
    """An ingested vault event. Append-only."""

    __tablename__ = "deal_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    nft_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event: Mapped[str] = mapped_column(String(60), nullable=False)
    args: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_deal_log_nft", "nft_id", "block_number"),
        Index("uq_deal_log_event", "tx_hash", "log_index", unique=True),
    )


# ---------------------------------------------------------------------------
# Register the auto-update listeners for updated_at
# ---------------------------------------------------------------------------
event.listen(Deal, "before_update", _set_updated_at)
event.listen(LogSyncJob, "before_update", _set_updated_at)
