"""Timeout and retry policy for remote settlement calls.

Every chain interaction runs under ``asyncio.timeout`` inside a tenacity
retry loop with exponential backoff. Reads are retried on any transport
error. Submissions are only retried when the connection itself failed,
since a timed-out submission may still land on chain.

Usage:
    policy = ResiliencePolicy.from_settings(get_settings())
    block = await policy.run("evm.block_number", lambda: w3.eth.block_number)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from deal_escrow.domain.exceptions import DealEscrowError, SettlementError
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from deal_escrow.config import Settings

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OSError, httpx.TransportError)
CONNECT_ERRORS: tuple[type[BaseException], ...] = (ConnectionError, httpx.ConnectError)


@dataclass(frozen=True)
class ResiliencePolicy:
    timeout_seconds: float = 60.0
    max_attempts: int = 3
    backoff_multiplier: float = 1.0
    backoff_max: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> ResiliencePolicy:
        return cls(
            timeout_seconds=settings.settlement_timeout_seconds,
            max_attempts=settings.settlement_max_attempts,
            backoff_max=settings.settlement_backoff_max_seconds,
        )

    async def run(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        *,
        idempotent: bool = True,
    ) -> T:
        """Run ``fn`` under the policy.

        Raises:
            SettlementError: On timeout, exhausted retries, or any SDK failure.
            DealEscrowError: Domain errors raised by ``fn`` pass through unchanged.
        """
        retryable = TRANSIENT_ERRORS if idempotent else CONNECT_ERRORS
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            retry=retry_if_exception_type(retryable),
            before_sleep=_log_retry(operation),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    async with asyncio.timeout(self.timeout_seconds):
                        result = await fn()
        except DealEscrowError:
            raise
        except TimeoutError as exc:
            logger.error("settlement.timeout", operation=operation, timeout=self.timeout_seconds)
            raise SettlementError(f"{operation} timed out") from exc
        except Exception as exc:
            logger.error("settlement.call_failed", operation=operation, error=str(exc))
            raise SettlementError(f"{operation} failed: {exc}") from exc
        return result


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            "settlement.retrying",
            operation=operation,
            attempt=state.attempt_number,
            error=str(error),
        )

    return _before_sleep
