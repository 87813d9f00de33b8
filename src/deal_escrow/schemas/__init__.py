"""Pydantic API schemas."""

from deal_escrow.schemas.common import ErrorResponse, HealthResponse
from deal_escrow.schemas.deal import (
    AddDocumentRequest,
    AssignDepositContractRequest,
    AssignNftRequest,
    CreateDealRequest,
    DealLogResponse,
    DealPageResponse,
    DealResponse,
    DealStatusResponse,
    DocumentResponse,
    MilestoneResponse,
    UpdateCurrentMilestoneRequest,
    UpdateDealRequest,
    UpdateDocumentRequest,
)
from deal_escrow.schemas.ledger import (
    BalanceResponse,
    DealLedgerStateResponse,
    DepositRequest,
    DepositResponse,
    InvestorWalletResponse,
    RedemptionRequest,
    RedemptionResponse,
)

__all__ = [
    "AddDocumentRequest",
    "AssignDepositContractRequest",
    "AssignNftRequest",
    "BalanceResponse",
    "CreateDealRequest",
    "DealLedgerStateResponse",
    "DealLogResponse",
    "DealPageResponse",
    "DealResponse",
    "DealStatusResponse",
    "DepositRequest",
    "DepositResponse",
    "DocumentResponse",
    "ErrorResponse",
    "HealthResponse",
    "InvestorWalletResponse",
    "MilestoneResponse",
    "RedemptionRequest",
    "RedemptionResponse",
    "UpdateCurrentMilestoneRequest",
    "UpdateDealRequest",
    "UpdateDocumentRequest",
]
