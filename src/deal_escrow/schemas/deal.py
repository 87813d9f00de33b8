"""Pydantic schemas for the Deals and Milestones API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers. Per-viewer fields (``new``, document ``seen``) are
computed in ``DealResponse.from_deal``.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from deal_escrow.infrastructure.database.orm_models import (
    Deal,
    DealDocument,
    DealParticipant,
    Milestone,
)

WALLET_PATTERN = r"^0x[0-9a-fA-F]{40}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CompanyInfo(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    country: str | None = Field(default=None, max_length=80)
    tax_id: str | None = Field(default=None, max_length=80)


class ParticipantInput(BaseModel):
    """A buyer or supplier listed on a proposal, identified by email."""

    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=320)
    wallet_address: str | None = Field(default=None, pattern=WALLET_PATTERN)


class MilestoneInput(BaseModel):
    description: str | None = Field(default=None, max_length=2000)
    funds_distribution: int = Field(
        ...,
        ge=0,
        le=100,
        description="Percentage of the vault balance released when this milestone is approved",
    )


class CreateDealRequest(BaseModel):
    """Request body for proposing a new deal."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=10_000)
    cover_image_url: str | None = Field(default=None, max_length=2048)
    origin: str | None = Field(default=None, max_length=120)
    destination: str | None = Field(default=None, max_length=120)
    transport: str | None = Field(default=None, max_length=60)
    quantity: Decimal | None = Field(default=None, ge=0)
    total_value: Decimal | None = Field(default=None, ge=0)
    shipping_start_date: date | None = None
    expected_shipping_end_date: date | None = None
    investment_amount: Decimal = Field(
        ...,
        ge=0,
        description="Maximum amount the deal may raise",
        examples=[100000],
    )
    buyer_company: CompanyInfo | None = None
    supplier_company: CompanyInfo | None = None
    buyers: list[ParticipantInput] = Field(..., min_length=1)
    suppliers: list[ParticipantInput] = Field(..., min_length=1)
    milestones: list[MilestoneInput] = Field(
        ...,
        min_length=1,
        description="Ordered milestones; the deal finishes when milestone 6 is approved",
    )


class UpdateDealRequest(BaseModel):
    """Partial update of a proposal. Only fields sent are applied."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=10_000)
    cover_image_url: str | None = Field(default=None, max_length=2048)
    origin: str | None = Field(default=None, max_length=120)
    destination: str | None = Field(default=None, max_length=120)
    transport: str | None = Field(default=None, max_length=60)
    quantity: Decimal | None = Field(default=None, ge=0)
    total_value: Decimal | None = Field(default=None, ge=0)
    shipping_start_date: date | None = None
    expected_shipping_end_date: date | None = None
    investment_amount: Decimal | None = Field(default=None, ge=0)
    buyer_company: CompanyInfo | None = None
    supplier_company: CompanyInfo | None = None
    milestones: list[MilestoneInput] | None = Field(default=None, min_length=1)


class UpdateCurrentMilestoneRequest(BaseModel):
    """Signed request advancing the milestone cursor."""

    current_milestone: int = Field(
        ...,
        ge=0,
        description="Index of the milestone to move to; must be the current one plus one",
    )
    signature: str = Field(
        ...,
        min_length=1,
        description='Personal-sign signature of "Approve milestone {index} of deal {reference}"',
    )


class AddDocumentRequest(BaseModel):
    """Attach an already uploaded document by URL."""

    url: str = Field(..., min_length=1, max_length=2048)
    description: str | None = Field(default=None, max_length=2000)
    publicly_visible: bool = False


class UpdateDocumentRequest(BaseModel):
    description: str | None = Field(default=None, max_length=2000)
    publicly_visible: bool | None = None


class AssignNftRequest(BaseModel):
    """Admin backfill of an EVM settlement linkage."""

    nft_id: int = Field(..., ge=0)
    mint_tx_hash: str = Field(..., min_length=1, max_length=80)
    vault_address: str = Field(..., pattern=WALLET_PATTERN)


class AssignDepositContractRequest(BaseModel):
    deposit_contract_address: str = Field(..., pattern=WALLET_PATTERN)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DocumentResponse(BaseModel):
    id: uuid.UUID
    url: str
    description: str | None
    publicly_visible: bool
    seen: bool = False
    created_at: datetime

    @classmethod
    def from_document(
        cls,
        document: DealDocument,
        viewer_id: uuid.UUID | None = None,
    ) -> DocumentResponse:
        return cls(
            id=document.id,
            url=document.url,
            description=document.description,
            publicly_visible=document.publicly_visible,
            seen=viewer_id is not None and document.seen_by(viewer_id),
            created_at=document.created_at,
        )


class MilestoneResponse(BaseModel):
    id: uuid.UUID
    position: int
    description: str | None
    funds_distribution: int
    status: str
    approval_status: str
    docs: list[DocumentResponse] = Field(default_factory=list)

    @classmethod
    def from_milestone(
        cls,
        milestone: Milestone,
        viewer_id: uuid.UUID | None = None,
    ) -> MilestoneResponse:
        return cls(
            id=milestone.id,
            position=milestone.position,
            description=milestone.description,
            funds_distribution=milestone.funds_distribution,
            status=milestone.status,
            approval_status=milestone.approval_status,
            docs=[DocumentResponse.from_document(d, viewer_id) for d in milestone.docs],
        )


class ParticipantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID | None
    email: str
    wallet_address: str | None
    approved: bool
    is_new: bool


class DealResponse(BaseModel):
    """A deal as seen by one viewer. Sealed ledger seeds are never exposed."""

    id: uuid.UUID
    name: str
    description: str | None
    cover_image_url: str | None
    origin: str | None
    destination: str | None
    transport: str | None
    quantity: Decimal | None
    total_value: Decimal | None
    shipping_start_date: date | None
    expected_shipping_end_date: date | None
    buyer_company: dict | None
    supplier_company: dict | None
    status: str
    current_milestone: int
    investment_amount: Decimal
    revenue: Decimal | None
    net_balance: Decimal | None
    roi: Decimal | None
    is_published: bool
    new_documents: bool
    new: bool = Field(default=False, description="Viewer has not opened the deal yet")
    settlement_kind: str
    settlement_state: str
    nft_id: int | None
    mint_tx_hash: str | None
    vault_address: str | None
    xrpl_vault_address: str | None
    xrpl_borrower_address: str | None
    deposit_contract_address: str | None
    buyers: list[ParticipantResponse]
    suppliers: list[ParticipantResponse]
    milestones: list[MilestoneResponse]
    docs: list[DocumentResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_deal(cls, deal: Deal, viewer_id: uuid.UUID | None = None) -> DealResponse:
        entries: list[DealParticipant] = deal.entries_for(viewer_id) if viewer_id else []
        return cls(
            id=deal.id,
            name=deal.name,
            description=deal.description,
            cover_image_url=deal.cover_image_url,
            origin=deal.origin,
            destination=deal.destination,
            transport=deal.transport,
            quantity=deal.quantity,
            total_value=deal.total_value,
            shipping_start_date=deal.shipping_start_date,
            expected_shipping_end_date=deal.expected_shipping_end_date,
            buyer_company=deal.buyer_company,
            supplier_company=deal.supplier_company,
            status=deal.status,
            current_milestone=deal.current_milestone,
            investment_amount=deal.investment_amount,
            revenue=deal.revenue,
            net_balance=deal.net_balance,
            roi=deal.roi,
            is_published=deal.is_published,
            new_documents=deal.new_documents,
            new=any(entry.is_new for entry in entries),
            settlement_kind=deal.settlement_kind,
            settlement_state=deal.settlement_state,
            nft_id=deal.nft_id,
            mint_tx_hash=deal.mint_tx_hash,
            vault_address=deal.vault_address,
            xrpl_vault_address=deal.xrpl_vault_address,
            xrpl_borrower_address=deal.xrpl_borrower_address,
            deposit_contract_address=deal.deposit_contract_address,
            buyers=[ParticipantResponse.model_validate(p) for p in deal.buyers],
            suppliers=[ParticipantResponse.model_validate(p) for p in deal.suppliers],
            milestones=[MilestoneResponse.from_milestone(m, viewer_id) for m in deal.milestones],
            docs=[DocumentResponse.from_document(d, viewer_id) for d in deal.docs],
            created_at=deal.created_at,
            updated_at=deal.updated_at,
        )


class DealPageResponse(BaseModel):
    items: list[DealResponse]
    total: int
    offset: int
    limit: int


class DealLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    nft_id: int
    event: str
    args: dict
    block_number: int
    block_timestamp: datetime | None
    tx_hash: str
    log_index: int
    message: str | None


class DealStatusResponse(BaseModel):
    """Lightweight status check response."""

    deal_id: uuid.UUID
    status: str
    settlement_state: str
    current_milestone: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
