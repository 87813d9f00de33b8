"""Pydantic schemas for the ledger (deposit / redemption) API."""

from __future__ import annotations

import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from deal_escrow.schemas.deal import WALLET_PATTERN


class DepositRequest(BaseModel):
    """Manual credit of a stablecoin deposit to a ledger deal.

    ``investor_evm_address`` defaults to the caller's wallet; crediting someone
    else requires the admin role.
    """

    investor_evm_address: str | None = Field(default=None, pattern=WALLET_PATTERN)
    amount: Decimal = Field(..., gt=0, description="Deposit in whole token units")
    deal_id: uuid.UUID
    tx_hash: str = Field(..., min_length=1, max_length=80, description="Source EVM transaction")


class RedemptionRequest(BaseModel):
    investor_evm_address: str | None = Field(default=None, pattern=WALLET_PATTERN)
    shares_amount: Decimal = Field(..., gt=0)
    deal_id: uuid.UUID


class InvestorWalletResponse(BaseModel):
    address: str


class DepositResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deal_id: uuid.UUID
    investor_address: str
    amount: Decimal
    vault_tx_hash: str
    shares_tx_hash: str
    source_tx_hash: str


class RedemptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deal_id: uuid.UUID
    investor_address: str
    amount: Decimal
    burn_tx_hash: str
    return_tx_hash: str


class BalanceResponse(BaseModel):
    address: str | None
    currency: str
    balance: Decimal


class DealLedgerStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deal_id: uuid.UUID
    status: str
    settlement_kind: str
    settlement_state: str
    current_milestone: int
    milestone_percentages: list[int]
    vault_address: str | None
    borrower_address: str | None
    vault_balance: Decimal | None
