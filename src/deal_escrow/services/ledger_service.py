"""Ledger Service: investor deposits and redemptions on ledger deals.

A stablecoin deposit on the EVM side is mirrored on the ledger as:
    1. ``amount`` USD IOU issued to the deal's vault account
    2. ``amount`` SHRx shares issued to the investor's ledger wallet
Redemption is the inverse: shares are burned and the same amount of IOU is
paid back from the vault to the investor. The investor's ledger wallet is
created on first use and committed straight away; its seed is stored sealed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import (
    DealNotFoundError,
    InsufficientSharesError,
    LedgerWalletMissingError,
    UserNotFoundError,
)
from deal_escrow.domain.milestones import format_amount, quantize_amount
from deal_escrow.infrastructure.database.repositories import DealRepository, UserRepository
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from deal_escrow.domain.settlement_protocol import LedgerOperations
    from deal_escrow.infrastructure.database.orm_models import Deal, User
    from deal_escrow.settlement import SettlementRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class DepositReceipt:
    deal_id: uuid.UUID
    investor_address: str
    amount: Decimal
    vault_tx_hash: str
    shares_tx_hash: str
    source_tx_hash: str


@dataclass
class DepositProgress:
    """Ledger steps of one deposit that already went through.

    Passed back into ``process_deposit`` on a retry so a step that succeeded
    is not paid a second time.
    """

    vault_tx_hash: str | None = None
    shares_tx_hash: str | None = None


@dataclass(frozen=True)
class RedemptionReceipt:
    deal_id: uuid.UUID
    investor_address: str
    amount: Decimal
    burn_tx_hash: str
    return_tx_hash: str


class LedgerService:
    """Deposits, redemptions and balances for ledger-settled deals."""

    def __init__(self, session: AsyncSession, registry: SettlementRegistry) -> None:
        self._session = session
        self._deal_repo = DealRepository(session)
        self._user_repo = UserRepository(session)
        self._registry = registry

    @property
    def _ledger(self) -> LedgerOperations:
        return self._registry.ledger

    # ------------------------------------------------------------------
    # Investor wallets
    # ------------------------------------------------------------------

    async def create_investor_wallet(self, user: User) -> str:
        """Return the user's ledger address, creating the wallet on first use."""
        if user.xrpl_wallet_address and user.xrpl_wallet_seed_sealed:
            return user.xrpl_wallet_address

        wallet = await self._ledger.create_investor_wallet()
        user.xrpl_wallet_address = wallet.address
        user.xrpl_wallet_seed_sealed = wallet.sealed_seed
        await self._user_repo.save(user)
        # The wallet is live on the ledger; its sealed seed must outlive a failed payment.
        await self._session.commit()
        logger.info("ledger.investor_wallet_created", user_id=str(user.id), address=wallet.address)
        return wallet.address

    # ------------------------------------------------------------------
    # Deposits and redemptions
    # ------------------------------------------------------------------

    async def process_deposit(
        self,
        investor_evm_address: str,
        amount: Decimal,
        deal_id: uuid.UUID,
        tx_hash: str,
        progress: DepositProgress | None = None,
    ) -> DepositReceipt:
        """Credit a stablecoin deposit: IOU to the vault, shares to the investor.

        ``progress`` is updated after each ledger payment. When a retry passes
        the same object back, payments already recorded in it are skipped.
        """
        progress = progress if progress is not None else DepositProgress()
        deal = await self._ledger_deal_or_raise(deal_id)
        investor = await self._investor_or_raise(investor_evm_address)
        investor_address = await self.create_investor_wallet(investor)
        amount = quantize_amount(amount)

        logger.info(
            "ledger.deposit_processing",
            deal_id=str(deal_id),
            investor=investor_evm_address,
            amount=format_amount(amount),
            source_tx_hash=tx_hash,
            resumed=progress.vault_tx_hash is not None,
        )
        if progress.vault_tx_hash is None:
            progress.vault_tx_hash = await self._ledger.issue_to_vault(
                deal.xrpl_vault_address, amount
            )
        if progress.shares_tx_hash is None:
            progress.shares_tx_hash = await self._ledger.mint_shares(investor_address, amount)

        logger.info(
            "ledger.deposit_processed",
            deal_id=str(deal_id),
            investor=investor_evm_address,
            vault_tx_hash=progress.vault_tx_hash,
            shares_tx_hash=progress.shares_tx_hash,
        )
        return DepositReceipt(
            deal_id=deal.id,
            investor_address=investor_address,
            amount=amount,
            vault_tx_hash=progress.vault_tx_hash,
            shares_tx_hash=progress.shares_tx_hash,
            source_tx_hash=tx_hash,
        )

    async def process_redemption(
        self,
        investor_evm_address: str,
        shares_amount: Decimal,
        deal_id: uuid.UUID,
    ) -> RedemptionReceipt:
        """Burn the investor's shares and pay the same amount of IOU back from the vault."""
        deal = await self._ledger_deal_or_raise(deal_id)
        if not deal.xrpl_vault_seed_sealed:
            raise LedgerWalletMissingError(f"Deal {deal_id} does not have XRPL vault")
        investor = await self._investor_or_raise(investor_evm_address)
        if not (investor.xrpl_wallet_address and investor.xrpl_wallet_seed_sealed):
            raise LedgerWalletMissingError(
                f"Investor {investor_evm_address} does not have XRPL wallet"
            )

        amount = quantize_amount(shares_amount)
        current = await self._ledger.shares_balance(investor.xrpl_wallet_address)
        if current < amount:
            raise InsufficientSharesError(format_amount(current), format_amount(amount))

        burn_tx_hash = await self._ledger.burn_shares(investor.xrpl_wallet_seed_sealed, amount)
        return_tx_hash = await self._ledger.return_from_vault(
            deal.xrpl_vault_seed_sealed, investor.xrpl_wallet_address, amount
        )

        logger.info(
            "ledger.redemption_processed",
            deal_id=str(deal_id),
            investor=investor_evm_address,
            amount=format_amount(amount),
            burn_tx_hash=burn_tx_hash,
            return_tx_hash=return_tx_hash,
        )
        return RedemptionReceipt(
            deal_id=deal.id,
            investor_address=investor.xrpl_wallet_address,
            amount=amount,
            burn_tx_hash=burn_tx_hash,
            return_tx_hash=return_tx_hash,
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def shares_balance(self, user: User) -> tuple[str, Decimal]:
        if not user.xrpl_wallet_address:
            raise LedgerWalletMissingError("User does not have XRPL wallet")
        balance = await self._ledger.shares_balance(user.xrpl_wallet_address)
        return user.xrpl_wallet_address, balance

    async def vault_balance(self, deal_id: uuid.UUID) -> tuple[str, Decimal]:
        deal = await self._ledger_deal_or_raise(deal_id)
        balance = await self._ledger.vault_balance(deal.xrpl_vault_address)
        return deal.xrpl_vault_address, balance

    async def deal_state(self, deal_id: uuid.UUID) -> dict:
        """Deal status together with the live vault balance when it has one."""
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        balance = (
            await self._ledger.vault_balance(deal.xrpl_vault_address)
            if deal.xrpl_vault_address
            else None
        )
        return {
            "deal_id": deal.id,
            "status": deal.status,
            "settlement_kind": deal.settlement_kind,
            "settlement_state": deal.settlement_state,
            "current_milestone": deal.current_milestone,
            "milestone_percentages": deal.milestone_percentages,
            "vault_address": deal.xrpl_vault_address,
            "borrower_address": deal.xrpl_borrower_address,
            "vault_balance": balance,
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _ledger_deal_or_raise(self, deal_id: uuid.UUID) -> Deal:
        deal = await self._deal_repo.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        if deal.settlement_kind != SettlementKind.LEDGER_IOU.value or not deal.xrpl_vault_address:
            raise LedgerWalletMissingError(f"Deal {deal_id} does not have XRPL vault")
        return deal

    async def _investor_or_raise(self, evm_address: str) -> User:
        investor = await self._user_repo.get_by_wallet(evm_address)
        if investor is None:
            raise UserNotFoundError(f"Investor {evm_address}")
        return investor
