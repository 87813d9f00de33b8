"""XRPL settlement backend (issued-currency vault accounts).

Each deal gets a vault account and a borrower account, both trusting the
admin account's issued USD. Milestone payouts are IOU payments from the vault
to the borrower of a percentage of the vault's balance *at payout time*.
Investors hold SHRx share tokens minted 1:1 against bridged deposits.

Seeds never leave this module in clear: new wallets are sealed through the
SeedKeyring before being returned, and sealed seeds are opened only to sign.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.transaction import submit_and_wait
from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.requests import AccountLines
from xrpl.models.transactions import NFTokenMint, NFTokenMintFlag, Payment, TrustSet
from xrpl.utils import str_to_hex
from xrpl.wallet import Wallet

from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import MissingConfigurationError, SettlementError
from deal_escrow.domain.milestones import format_amount, milestone_payout
from deal_escrow.domain.settlement_protocol import (
    LedgerWallet,
    MilestoneRelease,
    SettlementLinkage,
)
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from xrpl.models.transactions import Transaction

    from deal_escrow.config import Settings
    from deal_escrow.domain.settlement_protocol import DealTerms
    from deal_escrow.settlement.keyring import SeedKeyring
    from deal_escrow.settlement.resilience import ResiliencePolicy

logger = get_logger(__name__)


def encode_currency(code: str) -> str:
    """Return a ledger currency code; non-ISO codes become 40-char hex."""
    if len(code) == 3 and code.upper() != "XRP":
        return code
    return code.encode("ascii").hex().upper().ljust(40, "0")


class XrplSettlementBackend:
    """Settlement on the XRP Ledger with issued currencies."""

    kind = SettlementKind.LEDGER_IOU

    def __init__(
        self,
        client: Any,
        policy: ResiliencePolicy,
        keyring: SeedKeyring | None,
        admin_seed: str = "",
        currency: str = "USD",
        shares_currency: str = "SHRx",
        trust_limit: str = "1000000",
        activation_drops: int = 0,
    ) -> None:
        self._client = client
        self._policy = policy
        self._keyring = keyring
        self._admin_seed = admin_seed
        self._currency = encode_currency(currency)
        self._currency_label = currency
        self._shares_currency = encode_currency(shares_currency)
        self._trust_limit = trust_limit
        self._activation_drops = activation_drops

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        policy: ResiliencePolicy,
        keyring: SeedKeyring | None,
    ) -> XrplSettlementBackend:
        return cls(
            AsyncJsonRpcClient(settings.xrpl_server_url),
            policy,
            keyring,
            admin_seed=settings.xrpl_admin_seed,
            currency=settings.xrpl_currency,
            shares_currency=settings.xrpl_shares_currency,
            trust_limit=settings.xrpl_trust_limit,
            activation_drops=settings.xrpl_activation_drops,
        )

    # ------------------------------------------------------------------
    # Key handling
    # ------------------------------------------------------------------

    def _admin_wallet(self) -> Wallet:
        if not self._admin_seed:
            raise MissingConfigurationError("XRPL_ADMIN_SEED")
        return Wallet.from_seed(self._admin_seed)

    def _require_keyring(self) -> SeedKeyring:
        if self._keyring is None:
            raise MissingConfigurationError("SEED_ENCRYPTION_KEY")
        return self._keyring

    def _seal(self, wallet: Wallet) -> str:
        return self._require_keyring().seal(wallet.seed)

    def _wallet_for(self, sealed_seed: str) -> Wallet:
        return Wallet.from_seed(self._require_keyring().unseal(sealed_seed))

    # ------------------------------------------------------------------
    # Submission helpers
    # ------------------------------------------------------------------

    async def _submit(self, operation: str, tx: Transaction, wallet: Wallet) -> str:
        response = await self._policy.run(
            f"xrpl.{operation}",
            lambda: submit_and_wait(tx, self._client, wallet),
            idempotent=False,
        )
        result = response.result
        tx_hash = result.get("hash") or result.get("tx_json", {}).get("hash")
        engine_result = result.get("meta", {}).get("TransactionResult")
        if not tx_hash:
            raise SettlementError(f"{operation}: transaction hash missing from response")
        if engine_result not in (None, "tesSUCCESS"):
            raise SettlementError(f"{operation} failed: {engine_result}", tx_hash=tx_hash)
        logger.info("xrpl.tx_validated", operation=operation, tx_hash=tx_hash)
        return tx_hash

    def _amount(self, currency: str, value: Decimal) -> IssuedCurrencyAmount:
        return IssuedCurrencyAmount(
            currency=currency,
            issuer=self._admin_wallet().address,
            value=format_amount(value),
        )

    async def _activate(self, address: str) -> None:
        """Fund a new account with the base reserve when activation is configured."""
        if self._activation_drops <= 0:
            return
        admin = self._admin_wallet()
        await self._submit(
            "activate",
            Payment(
                account=admin.address,
                destination=address,
                amount=str(self._activation_drops),
            ),
            admin,
        )

    async def _set_trustline(self, wallet: Wallet, currency: str) -> str:
        limit = IssuedCurrencyAmount(
            currency=currency,
            issuer=self._admin_wallet().address,
            value=self._trust_limit,
        )
        return await self._submit(
            "trust_set",
            TrustSet(account=wallet.address, limit_amount=limit),
            wallet,
        )

    async def get_iou_balance(self, address: str, currency: str) -> Decimal:
        """Balance of ``currency`` issued by the admin account; 0 without a trust line."""
        issuer = self._admin_wallet().address
        response = await self._policy.run(
            "xrpl.account_lines",
            lambda: self._client.request(
                AccountLines(account=address, ledger_index="validated", peer=issuer)
            ),
        )
        for line in response.result.get("lines", []):
            if line.get("currency") == currency and line.get("account") == issuer:
                return Decimal(str(line.get("balance", "0")))
        return Decimal("0")

    # ------------------------------------------------------------------
    # SettlementBackend protocol
    # ------------------------------------------------------------------

    async def open_deal(self, terms: DealTerms) -> SettlementLinkage:
        admin = self._admin_wallet()
        self._require_keyring()
        vault = Wallet.create()
        borrower = Wallet.create()

        for wallet in (vault, borrower):
            await self._activate(wallet.address)
            await self._set_trustline(wallet, self._currency)

        metadata = {
            "dealId": terms.deal_id,
            "borrower": borrower.address,
            "milestones": terms.milestone_percentages,
            "maxDeposit": f"{terms.investment_amount} {self._currency_label}",
        }
        uri = str_to_hex("data:application/json," + json.dumps(metadata, separators=(",", ":")))
        mint_hash = await self._submit(
            "nftoken_mint",
            NFTokenMint(
                account=admin.address,
                nftoken_taxon=0,
                uri=uri,
                flags=NFTokenMintFlag.TF_BURNABLE,
            ),
            admin,
        )
        logger.info(
            "xrpl.deal_opened",
            deal_id=terms.deal_id,
            vault=vault.address,
            borrower=borrower.address,
            tx_hash=mint_hash,
        )
        return SettlementLinkage(
            kind=self.kind,
            mint_tx_hash=mint_hash,
            vault_address=vault.address,
            borrower_address=borrower.address,
            sealed_vault_seed=self._seal(vault),
            sealed_borrower_seed=self._seal(borrower),
        )

    async def release_milestone(
        self,
        linkage: SettlementLinkage,
        milestone_index: int,
        percentages: list[int],
    ) -> MilestoneRelease:
        if milestone_index >= len(percentages):
            raise SettlementError("All milestones already completed")
        if not (linkage.vault_address and linkage.borrower_address and linkage.sealed_vault_seed):
            raise SettlementError("Deal has no ledger vault")

        balance = await self.get_iou_balance(linkage.vault_address, self._currency)
        if balance <= 0:
            raise SettlementError("Vault empty, nothing to pay")

        amount = milestone_payout(balance, percentages[milestone_index])
        vault = self._wallet_for(linkage.sealed_vault_seed)
        tx_hash = await self._submit(
            "milestone_payout",
            Payment(
                account=vault.address,
                destination=linkage.borrower_address,
                amount=self._amount(self._currency, amount),
            ),
            vault,
        )
        logger.info(
            "xrpl.milestone_paid",
            milestone_index=milestone_index,
            amount=str(amount),
            vault_balance=str(balance),
            tx_hash=tx_hash,
        )
        return MilestoneRelease(
            tx_hash=tx_hash,
            milestone_index=milestone_index,
            amount=amount,
            vault_balance=balance,
        )

    async def complete_deal(self, linkage: SettlementLinkage) -> str | None:
        # Ledger vaults have no completion flag; repayment is tracked off-ledger.
        logger.info("xrpl.deal_completed", vault=linkage.vault_address)
        return None

    # ------------------------------------------------------------------
    # LedgerOperations
    # ------------------------------------------------------------------

    async def create_investor_wallet(self) -> LedgerWallet:
        self._admin_wallet()
        wallet = Wallet.create()
        await self._activate(wallet.address)
        await self._set_trustline(wallet, self._currency)
        await self._set_trustline(wallet, self._shares_currency)
        logger.info("xrpl.investor_wallet_created", address=wallet.address)
        return LedgerWallet(address=wallet.address, sealed_seed=self._seal(wallet))

    async def issue_to_vault(self, vault_address: str, amount: Decimal) -> str:
        admin = self._admin_wallet()
        return await self._submit(
            "issue_to_vault",
            Payment(
                account=admin.address,
                destination=vault_address,
                amount=self._amount(self._currency, amount),
            ),
            admin,
        )

    async def mint_shares(self, investor_address: str, amount: Decimal) -> str:
        admin = self._admin_wallet()
        return await self._submit(
            "mint_shares",
            Payment(
                account=admin.address,
                destination=investor_address,
                amount=self._amount(self._shares_currency, amount),
            ),
            admin,
        )

    async def burn_shares(self, sealed_investor_seed: str, amount: Decimal) -> str:
        investor = self._wallet_for(sealed_investor_seed)
        return await self._submit(
            "burn_shares",
            Payment(
                account=investor.address,
                destination=self._admin_wallet().address,
                amount=self._amount(self._shares_currency, amount),
            ),
            investor,
        )

    async def return_from_vault(
        self,
        sealed_vault_seed: str,
        destination: str,
        amount: Decimal,
    ) -> str:
        vault = self._wallet_for(sealed_vault_seed)
        return await self._submit(
            "return_from_vault",
            Payment(
                account=vault.address,
                destination=destination,
                amount=self._amount(self._currency, amount),
            ),
            vault,
        )

    async def vault_balance(self, vault_address: str) -> Decimal:
        return await self.get_iou_balance(vault_address, self._currency)

    async def shares_balance(self, investor_address: str) -> Decimal:
        return await self.get_iou_balance(investor_address, self._shares_currency)
