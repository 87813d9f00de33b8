"""In-memory settlement backend for dry runs and tests.

Generates fake transaction hashes and addresses but keeps real balances, so
ledger payouts follow the same live-balance arithmetic as the XRPL backend.
Enabled with SETTLEMENT_SIMULATE=true.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from decimal import Decimal
from typing import TYPE_CHECKING

from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import SettlementError
from deal_escrow.domain.milestones import milestone_payout
from deal_escrow.domain.settlement_protocol import (
    LedgerWallet,
    MilestoneRelease,
    SettlementLinkage,
)
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from deal_escrow.domain.settlement_protocol import DealTerms
    from deal_escrow.settlement.keyring import SeedKeyring

logger = get_logger(__name__)

USD = "USD"
SHARES = "SHRx"


def _fake_tx_hash() -> str:
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


class SimulatedSettlementBackend:
    """Settlement double implementing both the backend and ledger surfaces."""

    def __init__(
        self,
        kind: SettlementKind,
        keyring: SeedKeyring | None = None,
    ) -> None:
        self.kind = kind
        self._keyring = keyring
        self._balances: dict[tuple[str, str], Decimal] = defaultdict(Decimal)
        self._seeds: dict[str, str] = {}
        self._next_nft_id = 1
        self.calls: list[tuple[str, tuple]] = []

    # --- Helpers ---

    def _new_account(self) -> tuple[str, str]:
        address = "r" + uuid.uuid4().hex[:24]
        seed = "s" + uuid.uuid4().hex[:28]
        sealed = self._keyring.seal(seed) if self._keyring else f"sim:{seed}"
        self._seeds[sealed] = address
        return address, sealed

    def _address_for(self, sealed_seed: str) -> str:
        address = self._seeds.get(sealed_seed)
        if address is None:
            raise SettlementError("Unknown sealed seed")
        return address

    def _move(
        self,
        source: str | None,
        destination: str | None,
        currency: str,
        amount: Decimal,
    ) -> str:
        if source is not None:
            if self._balances[(source, currency)] < amount:
                raise SettlementError(f"Insufficient {currency} balance on {source}")
            self._balances[(source, currency)] -= amount
        if destination is not None:
            self._balances[(destination, currency)] += amount
        return _fake_tx_hash()

    def balance_of(self, address: str, currency: str = USD) -> Decimal:
        return self._balances[(address, currency)]

    # --- SettlementBackend ---

    async def open_deal(self, terms: DealTerms) -> SettlementLinkage:
        self.calls.append(("open_deal", (terms.deal_id,)))
        tx_hash = _fake_tx_hash()
        if self.kind == SettlementKind.EVM_CONTRACT:
            nft_id = self._next_nft_id
            self._next_nft_id += 1
            linkage = SettlementLinkage(
                kind=self.kind,
                mint_tx_hash=tx_hash,
                nft_id=nft_id,
                vault_address="0x" + (uuid.uuid4().hex + uuid.uuid4().hex)[:40],
                log_sync_from_block=0,
            )
        else:
            vault, sealed_vault = self._new_account()
            borrower, sealed_borrower = self._new_account()
            linkage = SettlementLinkage(
                kind=self.kind,
                mint_tx_hash=tx_hash,
                vault_address=vault,
                borrower_address=borrower,
                sealed_vault_seed=sealed_vault,
                sealed_borrower_seed=sealed_borrower,
            )
        logger.info("settlement.simulated_open", deal_id=terms.deal_id, **linkage.to_dict())
        return linkage

    async def release_milestone(
        self,
        linkage: SettlementLinkage,
        milestone_index: int,
        percentages: list[int],
    ) -> MilestoneRelease:
        self.calls.append(("release_milestone", (milestone_index,)))
        if self.kind == SettlementKind.EVM_CONTRACT:
            return MilestoneRelease(tx_hash=_fake_tx_hash(), milestone_index=milestone_index)

        if milestone_index >= len(percentages):
            raise SettlementError("All milestones already completed")
        balance = self.balance_of(linkage.vault_address or "")
        if balance <= 0:
            raise SettlementError("Vault empty, nothing to pay")
        amount = milestone_payout(balance, percentages[milestone_index])
        tx_hash = self._move(linkage.vault_address, linkage.borrower_address, USD, amount)
        return MilestoneRelease(
            tx_hash=tx_hash,
            milestone_index=milestone_index,
            amount=amount,
            vault_balance=balance,
        )

    async def complete_deal(self, linkage: SettlementLinkage) -> str | None:
        self.calls.append(("complete_deal", (linkage.mint_tx_hash,)))
        return _fake_tx_hash() if self.kind == SettlementKind.EVM_CONTRACT else None

    # --- LedgerOperations ---

    async def create_investor_wallet(self) -> LedgerWallet:
        address, sealed = self._new_account()
        return LedgerWallet(address=address, sealed_seed=sealed)

    async def issue_to_vault(self, vault_address: str, amount: Decimal) -> str:
        return self._move(None, vault_address, USD, amount)

    async def mint_shares(self, investor_address: str, amount: Decimal) -> str:
        return self._move(None, investor_address, SHARES, amount)

    async def burn_shares(self, sealed_investor_seed: str, amount: Decimal) -> str:
        return self._move(self._address_for(sealed_investor_seed), None, SHARES, amount)

    async def return_from_vault(
        self,
        sealed_vault_seed: str,
        destination: str,
        amount: Decimal,
    ) -> str:
        return self._move(self._address_for(sealed_vault_seed), destination, USD, amount)

    async def vault_balance(self, vault_address: str) -> Decimal:
        return self.balance_of(vault_address, USD)

    async def shares_balance(self, investor_address: str) -> Decimal:
        return self.balance_of(investor_address, SHARES)
