"""Settlement Backend Protocol.

Defines the interface every settlement backend must implement. Deals are
dispatched to a backend by their recorded ``settlement_kind``; services never
branch on the backend themselves.

The domain layer has ZERO imports from web3, xrpl-py, or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal

    from deal_escrow.domain.enums import SettlementKind


@dataclass(frozen=True)
class DealTerms:
    """Input to ``open_deal``.

    Attributes:
        deal_id: Stable deal identifier (stringified UUID).
        milestone_percentages: Funds distribution per milestone, in order.
        investment_amount: Maximum the deal may raise.
        buyer_wallet: Wallet of the first buyer; owner of the EVM deal NFT.
    """

    deal_id: str
    milestone_percentages: list[int]
    investment_amount: Decimal
    buyer_wallet: str | None = None


@dataclass(frozen=True)
class SettlementLinkage:
    """Identifiers binding a deal to its on-chain counterpart.

    Only the fields of the deal's own backend are populated. Ledger seeds
    are carried sealed; backends unseal them only to sign.
    """

    kind: SettlementKind
    mint_tx_hash: str
    nft_id: int | None = None
    vault_address: str | None = None
    borrower_address: str | None = None
    sealed_vault_seed: str | None = None
    sealed_borrower_seed: str | None = None
    log_sync_from_block: int | None = None

    def to_dict(self) -> dict:
        """Serialise for logs and API responses (sealed seeds excluded)."""
        return {
            "kind": str(self.kind),
            "mint_tx_hash": self.mint_tx_hash,
            "nft_id": self.nft_id,
            "vault_address": self.vault_address,
            "borrower_address": self.borrower_address,
        }


@dataclass(frozen=True)
class MilestoneRelease:
    """Outcome of one milestone payout.

    ``amount`` and ``vault_balance`` are only known for ledger payouts;
    the EVM vault contract computes its own release.
    """

    tx_hash: str
    milestone_index: int
    amount: Decimal | None = None
    vault_balance: Decimal | None = None
    details: dict = field(default_factory=dict)


@runtime_checkable
class SettlementBackend(Protocol):
    """Protocol that both settlement backends satisfy.

    Concrete implementations:
        - settlement/evm.py        (deals-manager contract + vault contracts)
        - settlement/ledger.py     (XRPL issued-currency vault accounts)
        - settlement/simulated.py  (in-memory, for dry runs and tests)
    """

    kind: SettlementKind

    async def open_deal(self, terms: DealTerms) -> SettlementLinkage:
        """Create the on-chain counterpart of a confirmed deal."""
        ...

    async def release_milestone(
        self,
        linkage: SettlementLinkage,
        milestone_index: int,
        percentages: list[int],
    ) -> MilestoneRelease:
        """Release funds for the milestone at ``milestone_index`` (zero-based)."""
        ...

    async def complete_deal(self, linkage: SettlementLinkage) -> str | None:
        """Mark the deal completed after repayment. Returns a tx hash if any."""
        ...


@dataclass(frozen=True)
class LedgerWallet:
    """A freshly created ledger account; the seed is already sealed."""

    address: str
    sealed_seed: str


@runtime_checkable
class LedgerOperations(Protocol):
    """Investor-facing operations of the ledger backend (deposits, shares)."""

    async def create_investor_wallet(self) -> LedgerWallet: ...

    async def issue_to_vault(self, vault_address: str, amount: Decimal) -> str: ...

    async def mint_shares(self, investor_address: str, amount: Decimal) -> str: ...

    async def burn_shares(self, sealed_investor_seed: str, amount: Decimal) -> str: ...

    async def return_from_vault(
        self, sealed_vault_seed: str, destination: str, amount: Decimal
    ) -> str: ...

    async def vault_balance(self, vault_address: str) -> Decimal: ...

    async def shares_balance(self, investor_address: str) -> Decimal: ...
