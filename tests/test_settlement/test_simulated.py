"""Tests for the keyring, the simulated backend and the settlement registry."""

from __future__ import annotations

from decimal import Decimal

import pytest

from deal_escrow.config import Settings
from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import MissingConfigurationError, SettlementError
from deal_escrow.domain.settlement_protocol import (
    DealTerms,
    LedgerOperations,
    SettlementBackend,
)
from deal_escrow.settlement import SettlementRegistry, SimulatedSettlementBackend
from deal_escrow.settlement.keyring import SeedKeyring


def _terms() -> DealTerms:
    return DealTerms(
        deal_id="d-1",
        milestone_percentages=[10, 90],
        investment_amount=Decimal(1000),
        buyer_wallet="0x1111111111111111111111111111111111111111",
    )


class TestKeyring:
    def test_seal_round_trip(self) -> None:
        keyring = SeedKeyring(SeedKeyring.generate_key())
        sealed = keyring.seal("sEdSecret")
        assert "sEdSecret" not in sealed
        assert keyring.unseal(sealed) == "sEdSecret"

    def test_foreign_token(self) -> None:
        sealed = SeedKeyring(SeedKeyring.generate_key()).seal("sEdSecret")
        with pytest.raises(SettlementError, match="could not be opened"):
            SeedKeyring(SeedKeyring.generate_key()).unseal(sealed)

    def test_missing_key(self) -> None:
        with pytest.raises(MissingConfigurationError):
            SeedKeyring("")


class TestSimulatedEvm:
    @pytest.mark.asyncio
    async def test_nft_ids_increment(self) -> None:
        backend = SimulatedSettlementBackend(SettlementKind.EVM_CONTRACT)
        first = await backend.open_deal(_terms())
        second = await backend.open_deal(_terms())
        assert (first.nft_id, second.nft_id) == (1, 2)
        assert first.vault_address != second.vault_address

    @pytest.mark.asyncio
    async def test_release_records_call(self) -> None:
        backend = SimulatedSettlementBackend(SettlementKind.EVM_CONTRACT)
        linkage = await backend.open_deal(_terms())
        release = await backend.release_milestone(linkage, 0, [10, 90])
        assert release.amount is None
        assert backend.calls[-1] == ("release_milestone", (0,))


class TestSimulatedLedger:
    @pytest.mark.asyncio
    async def test_payouts_follow_live_balance(self) -> None:
        backend = SimulatedSettlementBackend(SettlementKind.LEDGER_IOU)
        linkage = await backend.open_deal(_terms())
        await backend.issue_to_vault(linkage.vault_address, Decimal(1000))

        first = await backend.release_milestone(linkage, 0, [10, 90])
        second = await backend.release_milestone(linkage, 1, [10, 90])

        assert first.amount == Decimal("100.000000")
        assert second.amount == Decimal("810.000000")
        assert backend.balance_of(linkage.borrower_address) == Decimal("910.000000")
        assert await backend.vault_balance(linkage.vault_address) == Decimal("90.000000")

    @pytest.mark.asyncio
    async def test_empty_vault(self) -> None:
        backend = SimulatedSettlementBackend(SettlementKind.LEDGER_IOU)
        linkage = await backend.open_deal(_terms())
        with pytest.raises(SettlementError, match="Vault empty"):
            await backend.release_milestone(linkage, 0, [10, 90])

    @pytest.mark.asyncio
    async def test_seeds_are_sealed_with_keyring(self) -> None:
        keyring = SeedKeyring(SeedKeyring.generate_key())
        backend = SimulatedSettlementBackend(SettlementKind.LEDGER_IOU, keyring)
        wallet = await backend.create_investor_wallet()
        assert keyring.unseal(wallet.sealed_seed).startswith("s")

    @pytest.mark.asyncio
    async def test_burn_more_than_held(self) -> None:
        backend = SimulatedSettlementBackend(SettlementKind.LEDGER_IOU)
        wallet = await backend.create_investor_wallet()
        await backend.mint_shares(wallet.address, Decimal(5))
        with pytest.raises(SettlementError, match="Insufficient"):
            await backend.burn_shares(wallet.sealed_seed, Decimal(6))

    def test_satisfies_protocols(self) -> None:
        backend = SimulatedSettlementBackend(SettlementKind.LEDGER_IOU)
        assert isinstance(backend, SettlementBackend)
        assert isinstance(backend, LedgerOperations)


class TestRegistry:
    def test_simulated_from_settings(self) -> None:
        settings = Settings(_env_file=None, settlement_simulate=True, use_xrpl=True)
        registry = SettlementRegistry.from_settings(settings)
        assert registry.default_kind == SettlementKind.LEDGER_IOU
        assert registry.evm_chain is None
        assert isinstance(registry.for_kind("EVM_CONTRACT"), SimulatedSettlementBackend)

    def test_default_kind_follows_use_xrpl(self) -> None:
        settings = Settings(_env_file=None, settlement_simulate=True, use_xrpl=False)
        assert SettlementRegistry.from_settings(settings).default_kind == (
            SettlementKind.EVM_CONTRACT
        )

    def test_missing_backend(self) -> None:
        registry = SettlementRegistry(
            {SettlementKind.EVM_CONTRACT: SimulatedSettlementBackend(SettlementKind.EVM_CONTRACT)},
            SettlementKind.EVM_CONTRACT,
        )
        with pytest.raises(MissingConfigurationError):
            registry.for_kind(SettlementKind.LEDGER_IOU)
        with pytest.raises(MissingConfigurationError):
            _ = registry.ledger
