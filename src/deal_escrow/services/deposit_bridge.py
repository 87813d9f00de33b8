"""Deposit Bridge: credits EVM stablecoin deposits on the ledger.

Each tick scans investment-token ``Transfer`` logs for the blocks that
appeared since the previous tick. A transfer whose recipient is the deposit
address of a bridged ledger deal is credited through
``LedgerService.process_deposit``. Credited transfers are remembered by
``txHash-logIndex`` in a bounded window. A failed credit is held with the
ledger steps it already completed and retried at the start of every tick
until it goes through.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from deal_escrow.domain.exceptions import DealEscrowError, SettlementError
from deal_escrow.domain.milestones import format_amount
from deal_escrow.infrastructure.database.repositories import DealRepository
from deal_escrow.logging_config import get_logger
from deal_escrow.services.ledger_service import DepositProgress, LedgerService

if TYPE_CHECKING:
    import uuid

    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from deal_escrow.config import Settings
    from deal_escrow.settlement import SettlementRegistry
    from deal_escrow.settlement.evm import EvmChain, TokenTransfer

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Processed-event windows
# ---------------------------------------------------------------------------


class ProcessedEventWindow:
    """Insertion-ordered set of processed event keys; the oldest are evicted first."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._keys: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    async def contains(self, key: str) -> bool:
        return key in self._keys

    async def add(self, key: str) -> None:
        self._keys[key] = None
        self._keys.move_to_end(key)
        while len(self._keys) > self._capacity:
            self._keys.popitem(last=False)


class RedisBackedEventWindow(ProcessedEventWindow):
    """Window mirrored into Redis so processed keys survive a restart."""

    def __init__(
        self,
        redis: aioredis.Redis,
        capacity: int = 1000,
        ttl_seconds: int = 86400,
        prefix: str = "bridge:deposit:",
    ) -> None:
        super().__init__(capacity)
        self._redis = redis
        self._ttl_seconds = ttl_seconds
        self._prefix = prefix

    async def contains(self, key: str) -> bool:
        if await super().contains(key):
            return True
        return bool(await self._redis.exists(self._prefix + key))

    async def add(self, key: str) -> None:
        await super().add(key)
        await self._redis.set(self._prefix + key, "1", ex=self._ttl_seconds)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


@dataclass
class PendingCredit:
    """A transfer waiting to be credited, with the ledger steps already paid."""

    transfer: TokenTransfer
    deal_id: uuid.UUID
    investor: str
    progress: DepositProgress = field(default_factory=DepositProgress)
    attempts: int = 0


class DepositBridge:
    """Polls the investment token and credits deposits into bridged deal vaults."""

    def __init__(
        self,
        chain: EvmChain,
        session_factory: async_sessionmaker[AsyncSession],
        registry: SettlementRegistry,
        *,
        token_address: str,
        deals_manager_address: str = "",
        token_decimals: int = 18,
        lookback_blocks: int = 100,
        window: ProcessedEventWindow | None = None,
        max_pending: int = 1000,
    ) -> None:
        self._chain = chain
        self._session_factory = session_factory
        self._registry = registry
        self._token_address = token_address
        self._deals_manager_address = deals_manager_address.lower()
        self._token_decimals = token_decimals
        self._lookback_blocks = lookback_blocks
        self._window = window if window is not None else ProcessedEventWindow()
        self._last_block: int | None = None
        self._max_pending = max_pending
        self._pending: OrderedDict[str, PendingCredit] = OrderedDict()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        chain: EvmChain,
        session_factory: async_sessionmaker[AsyncSession],
        registry: SettlementRegistry,
        window: ProcessedEventWindow | None = None,
    ) -> DepositBridge:
        capacity = settings.deposit_dedup_window
        return cls(
            chain,
            session_factory,
            registry,
            token_address=settings.investment_token_contract_address,
            deals_manager_address=settings.deals_manager_contract_address,
            token_decimals=settings.investment_token_decimals,
            lookback_blocks=settings.deposit_lookback_blocks,
            window=window if window is not None else ProcessedEventWindow(capacity),
            max_pending=capacity,
        )

    @property
    def last_block(self) -> int | None:
        return self._last_block

    @property
    def pending(self) -> int:
        """Failed credits waiting for the next tick."""
        return len(self._pending)

    async def run_once(self) -> int:
        """Retry pending credits, then scan new blocks. Returns the deposits credited."""
        latest = await self._chain.get_last_block()
        credited = await self._retry_pending()

        if self._last_block is not None:
            from_block = self._last_block + 1
        else:
            from_block = max(latest - self._lookback_blocks, 0)
        if from_block > latest:
            return credited

        async with self._session_factory() as session:
            vaults = await DealRepository(session).find_bridged_vaults()
        if not vaults:
            logger.debug("bridge.no_bridged_deals", to_block=latest)
            self._last_block = latest
            return credited

        transfers = await self._chain.get_token_transfers(self._token_address, from_block, latest)
        logger.debug(
            "bridge.transfers_found",
            count=len(transfers),
            from_block=from_block,
            to_block=latest,
        )

        for transfer in transfers:
            deal_id = vaults.get(transfer.recipient.lower())
            if deal_id is None or transfer.key in self._pending:
                continue
            if await self._window.contains(transfer.key):
                continue
            investor = await self._resolve_investor(transfer)
            if investor is None:
                continue
            if await self._credit(PendingCredit(transfer, deal_id, investor)):
                credited += 1

        self._last_block = latest
        return credited

    def to_token_amount(self, value: int) -> Decimal:
        return Decimal(value).scaleb(-self._token_decimals)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _retry_pending(self) -> int:
        credited = 0
        for entry in list(self._pending.values()):
            logger.info(
                "bridge.deposit_retry",
                tx_hash=entry.transfer.tx_hash,
                attempt=entry.attempts + 1,
            )
            if await self._credit(entry):
                credited += 1
        return credited

    async def _resolve_investor(self, transfer: TokenTransfer) -> str | None:
        """The transaction sender, since deposits routed through the manager show it as ``from``."""
        try:
            return (await self._chain.get_transaction_sender(transfer.tx_hash)).lower()
        except SettlementError:
            sender = transfer.sender.lower()
            if self._deals_manager_address and sender == self._deals_manager_address:
                logger.debug("bridge.untraceable_manager_transfer", tx_hash=transfer.tx_hash)
                return None
            logger.warning(
                "bridge.sender_lookup_failed",
                tx_hash=transfer.tx_hash,
                fallback=transfer.sender,
            )
            return transfer.sender.lower()

    async def _credit(self, entry: PendingCredit) -> bool:
        transfer = entry.transfer
        amount = self.to_token_amount(transfer.value)
        logger.info(
            "bridge.deposit_detected",
            deal_id=str(entry.deal_id),
            investor=entry.investor,
            amount=format_amount(amount),
            tx_hash=transfer.tx_hash,
        )
        try:
            async with self._session_factory() as session:
                await LedgerService(session, self._registry).process_deposit(
                    entry.investor, amount, entry.deal_id, transfer.tx_hash, entry.progress
                )
                await session.commit()
        except DealEscrowError as exc:
            entry.attempts += 1
            logger.error(
                "bridge.deposit_failed",
                deal_id=str(entry.deal_id),
                tx_hash=transfer.tx_hash,
                code=exc.code,
                error=exc.message,
                attempts=entry.attempts,
            )
            self._hold(entry)
            return False

        self._pending.pop(transfer.key, None)
        await self._window.add(transfer.key)
        logger.info(
            "bridge.deposit_credited", deal_id=str(entry.deal_id), tx_hash=transfer.tx_hash
        )
        return True

    def _hold(self, entry: PendingCredit) -> None:
        self._pending[entry.transfer.key] = entry
        while len(self._pending) > self._max_pending:
            key, dropped = self._pending.popitem(last=False)
            logger.error(
                "bridge.pending_dropped",
                key=key,
                deal_id=str(dropped.deal_id),
                vault_issued=dropped.progress.vault_tx_hash is not None,
            )
