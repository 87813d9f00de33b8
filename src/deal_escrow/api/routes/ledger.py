"""Ledger REST API routes (deals settled as issued currency on the XRP Ledger).

Routes:
    POST   /api/v1/ledger/investor/wallet              Create the caller's ledger wallet
    GET    /api/v1/ledger/investor/shares              The caller's share balance
    POST   /api/v1/ledger/deposit                      Credit a stablecoin deposit
    POST   /api/v1/ledger/redeem                       Burn shares, return IOU
    GET    /api/v1/ledger/deals/{id}/vault/balance     Vault IOU balance
    GET    /api/v1/ledger/deals/{id}/state             Deal status and vault balance
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends

from deal_escrow.api.deps import get_app_settings, get_current_user, get_ledger_service
from deal_escrow.config import Settings
from deal_escrow.domain.enums import UserRole
from deal_escrow.domain.exceptions import BadRequestError, ForbiddenError
from deal_escrow.infrastructure.database.orm_models import User
from deal_escrow.schemas.ledger import (
    BalanceResponse,
    DealLedgerStateResponse,
    DepositRequest,
    DepositResponse,
    InvestorWalletResponse,
    RedemptionRequest,
    RedemptionResponse,
)
from deal_escrow.services.ledger_service import LedgerService

router = APIRouter(prefix="/api/v1/ledger", tags=["Ledger"])


def _investor_address(user: User, requested: str | None) -> str:
    """The EVM address to act for: the caller's own unless an admin names another."""
    own = user.wallet_address or ""
    if requested is not None and requested.lower() != own.lower():
        if user.role != UserRole.ADMIN.value:
            raise ForbiddenError("Only admins can act for another investor")
        return requested
    if not own:
        raise BadRequestError("User does not have a wallet address", code="WALLET_MISSING")
    return own


# ---------------------------------------------------------------------------
# Investor
# ---------------------------------------------------------------------------


@router.post(
    "/investor/wallet",
    response_model=InvestorWalletResponse,
    status_code=201,
    summary="Create the caller's ledger wallet",
)
async def create_investor_wallet(
    user: User = Depends(get_current_user),
    svc: LedgerService = Depends(get_ledger_service),
) -> InvestorWalletResponse:
    """Idempotent: an existing wallet is returned unchanged. The seed is never returned."""
    address = await svc.create_investor_wallet(user)
    return InvestorWalletResponse(address=address)


@router.get(
    "/investor/shares",
    response_model=BalanceResponse,
    summary="The caller's share balance",
)
async def get_investor_shares(
    user: User = Depends(get_current_user),
    svc: LedgerService = Depends(get_ledger_service),
    settings: Settings = Depends(get_app_settings),
) -> BalanceResponse:
    if not user.xrpl_wallet_address:
        return BalanceResponse(
            address=None, currency=settings.xrpl_shares_currency, balance=Decimal(0)
        )
    address, balance = await svc.shares_balance(user)
    return BalanceResponse(address=address, currency=settings.xrpl_shares_currency, balance=balance)


# ---------------------------------------------------------------------------
# Deposits and redemptions
# ---------------------------------------------------------------------------


@router.post(
    "/deposit",
    response_model=DepositResponse,
    summary="Credit a stablecoin deposit",
)
async def process_deposit(
    request: DepositRequest,
    user: User = Depends(get_current_user),
    svc: LedgerService = Depends(get_ledger_service),
) -> DepositResponse:
    """Issue IOU to the deal's vault and shares to the investor, one to one."""
    receipt = await svc.process_deposit(
        _investor_address(user, request.investor_evm_address),
        request.amount,
        request.deal_id,
        request.tx_hash,
    )
    return DepositResponse.model_validate(receipt)


@router.post(
    "/redeem",
    response_model=RedemptionResponse,
    summary="Redeem shares",
)
async def process_redemption(
    request: RedemptionRequest,
    user: User = Depends(get_current_user),
    svc: LedgerService = Depends(get_ledger_service),
) -> RedemptionResponse:
    receipt = await svc.process_redemption(
        _investor_address(user, request.investor_evm_address),
        request.shares_amount,
        request.deal_id,
    )
    return RedemptionResponse.model_validate(receipt)


# ---------------------------------------------------------------------------
# Deal state
# ---------------------------------------------------------------------------


@router.get(
    "/deals/{deal_id}/vault/balance",
    response_model=BalanceResponse,
    summary="Vault IOU balance",
)
async def get_vault_balance(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: LedgerService = Depends(get_ledger_service),
    settings: Settings = Depends(get_app_settings),
) -> BalanceResponse:
    address, balance = await svc.vault_balance(deal_id)
    return BalanceResponse(address=address, currency=settings.xrpl_currency, balance=balance)


@router.get(
    "/deals/{deal_id}/state",
    response_model=DealLedgerStateResponse,
    summary="Deal status and vault balance",
)
async def get_deal_state(
    deal_id: uuid.UUID,
    user: User = Depends(get_current_user),
    svc: LedgerService = Depends(get_ledger_service),
) -> DealLedgerStateResponse:
    return DealLedgerStateResponse(**await svc.deal_state(deal_id))
