"""Log Sync Service: ingests vault contract events into deal_logs.

Every EVM deal gets a LogSyncJob when its vault is deployed. Each tick reads
the vault's logs from ``last_block + 1`` to the chain head, stores the known
events (``Deposit``, ``Withdraw``) and advances the job's cursor. Jobs are
deactivated when the deal is repaid.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from deal_escrow.domain.exceptions import DealEscrowError
from deal_escrow.infrastructure.database.orm_models import DealLog, LogSyncJob
from deal_escrow.infrastructure.database.repositories import DealLogRepository, LogSyncJobRepository
from deal_escrow.logging_config import get_logger
from deal_escrow.settlement.evm import decode_vault_log

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from deal_escrow.settlement.evm import EvmChain, VaultEvent

logger = get_logger(__name__)


def describe_event(event: VaultEvent, decimals: int = 18) -> str:
    """Human-readable line for the activity feed."""
    assets = Decimal(event.args.get("assets", "0")).scaleb(-decimals).normalize()
    if event.name == "Deposit":
        return f"Deposit of {assets:f} by {event.args.get('owner', event.args.get('sender'))}"
    if event.name == "Withdraw":
        return f"Withdrawal of {assets:f} to {event.args.get('receiver')}"
    return event.name


class LogSyncService:
    """Fetches and stores vault events for every active job."""

    def __init__(
        self,
        chain: EvmChain,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        token_decimals: int = 18,
        max_block_range: int = 5000,
    ) -> None:
        self._chain = chain
        self._session_factory = session_factory
        self._token_decimals = token_decimals
        self._max_block_range = max_block_range

    async def run_once(self) -> int:
        """Sync every active job once. Returns the number of new logs stored."""
        latest = await self._chain.get_last_block()
        async with self._session_factory() as session:
            job_ids = [job.id for job in await LogSyncJobRepository(session).list_active()]

        stored = 0
        for job_id in job_ids:
            async with self._session_factory() as session:
                job = await session.get(LogSyncJob, job_id)
                if job is None or not job.active:
                    continue
                contract, nft_id = job.contract, job.nft_id
                try:
                    stored += await self._sync_job(session, job, latest)
                    await session.commit()
                except DealEscrowError as exc:
                    await session.rollback()
                    logger.error(
                        "log_sync.job_failed",
                        contract=contract,
                        nft_id=nft_id,
                        error=exc.message,
                    )
        return stored

    async def _sync_job(self, session: AsyncSession, job: LogSyncJob, latest: int) -> int:
        job_repo = LogSyncJobRepository(session)
        log_repo = DealLogRepository(session)

        stored = 0
        from_block = job.last_block + 1
        while from_block <= latest:
            to_block = min(from_block + self._max_block_range - 1, latest)
            raw_logs = await self._chain.get_logs(job.contract, from_block, to_block)

            rows: list[DealLog] = []
            timestamps: dict[int, datetime] = {}
            for raw in raw_logs:
                event = decode_vault_log(raw)
                if event is None:
                    continue
                if event.block_number not in timestamps:
                    timestamps[event.block_number] = await self._chain.get_block_timestamp(
                        event.block_number
                    )
                rows.append(
                    DealLog(
                        nft_id=job.nft_id,
                        event=event.name,
                        args=event.args,
                        block_number=event.block_number,
                        block_timestamp=timestamps[event.block_number],
                        tx_hash=event.tx_hash,
                        log_index=event.log_index,
                        message=describe_event(event, self._token_decimals),
                    )
                )

            stored += await log_repo.record_many(rows)
            await job_repo.advance(job, to_block)
            from_block = to_block + 1

        if stored:
            logger.info("log_sync.stored", contract=job.contract, nft_id=job.nft_id, count=stored)
        return stored

