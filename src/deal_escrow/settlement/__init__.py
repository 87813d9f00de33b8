"""Settlement backends and the registry that dispatches deals to them.

Three implementations:
    - EvmSettlementBackend:       deals-manager contract on an EVM chain
    - XrplSettlementBackend:      issued-currency vaults on the XRP Ledger
    - SimulatedSettlementBackend: in-memory, for dry runs and tests

Every deal records its ``settlement_kind`` at creation; the registry maps that
kind to a backend, so flipping USE_XRPL only affects deals created afterwards.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from deal_escrow.domain.enums import SettlementKind
from deal_escrow.domain.exceptions import MissingConfigurationError
from deal_escrow.domain.settlement_protocol import LedgerOperations, SettlementBackend
from deal_escrow.settlement.evm import EvmChain, EvmSettlementBackend, verify_signed_message
from deal_escrow.settlement.keyring import SeedKeyring
from deal_escrow.settlement.ledger import XrplSettlementBackend
from deal_escrow.settlement.resilience import ResiliencePolicy
from deal_escrow.settlement.simulated import SimulatedSettlementBackend

if TYPE_CHECKING:
    from deal_escrow.config import Settings


class SettlementRegistry:
    """Maps settlement kinds to configured backends.

    Usage:
        registry = SettlementRegistry.from_settings(get_settings())
        backend = registry.for_kind(deal.settlement_kind)
        linkage = await backend.open_deal(terms)
    """

    def __init__(
        self,
        backends: dict[SettlementKind, SettlementBackend],
        default_kind: SettlementKind,
        evm_chain: EvmChain | None = None,
    ) -> None:
        self._backends = backends
        self._default_kind = default_kind
        self.evm_chain = evm_chain

    @classmethod
    def from_settings(cls, settings: Settings) -> SettlementRegistry:
        keyring = (
            SeedKeyring(settings.seed_encryption_key) if settings.seed_encryption_key else None
        )
        default_kind = (
            SettlementKind.LEDGER_IOU if settings.use_xrpl else SettlementKind.EVM_CONTRACT
        )

        if settings.settlement_simulate:
            return cls(
                {kind: SimulatedSettlementBackend(kind, keyring) for kind in SettlementKind},
                default_kind,
            )

        policy = ResiliencePolicy.from_settings(settings)
        chain = EvmChain.from_settings(settings, policy)
        backends: dict[SettlementKind, SettlementBackend] = {
            SettlementKind.EVM_CONTRACT: EvmSettlementBackend(
                chain,
                settings.deals_manager_contract_address,
                settings.vault_lookup_delay_seconds,
            ),
            SettlementKind.LEDGER_IOU: XrplSettlementBackend.from_settings(
                settings, policy, keyring
            ),
        }
        return cls(backends, default_kind, evm_chain=chain)

    @property
    def default_kind(self) -> SettlementKind:
        return self._default_kind

    def for_kind(self, kind: SettlementKind | str) -> SettlementBackend:
        backend = self._backends.get(SettlementKind(kind))
        if backend is None:
            raise MissingConfigurationError(f"{kind} settlement backend")
        return backend

    @property
    def ledger(self) -> LedgerOperations:
        backend = self.for_kind(SettlementKind.LEDGER_IOU)
        if not isinstance(backend, LedgerOperations):
            raise MissingConfigurationError("LEDGER_IOU settlement backend")
        return backend


__all__ = [
    "EvmChain",
    "EvmSettlementBackend",
    "ResiliencePolicy",
    "SeedKeyring",
    "SettlementRegistry",
    "SimulatedSettlementBackend",
    "XrplSettlementBackend",
    "verify_signed_message",
]
