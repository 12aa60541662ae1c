"""
Deadlines and bounded retries around adapter calls.

Every adapter call goes through :class:`RetryPolicy`: it is bounded by the
configured operation timeout, adapter-specific exceptions are translated into
:class:`StoreUnavailable`, and transient failures are retried with
exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from hybridstore.config.config import RetryConfig
from hybridstore.exceptions import HybridStoreError, StoreTimeout, StoreUnavailable
from hybridstore.observability import increment, observe
from hybridstore.protocols import Tier

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    tier = getattr(exc, "tier", None)
    logger.warning(
        "Retrying adapter call",
        attempt=retry_state.attempt_number,
        error=str(exc),
        tier=tier.value if tier else None,
    )


class RetryPolicy:
    """Applies the per-call timeout and the retry budget to adapter operations."""

    def __init__(self, config: RetryConfig, timeout: float) -> None:
        self.config = config
        self.timeout = timeout

    async def call(self, tier: Tier, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one attempt under the deadline, translating adapter failures."""
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(operation(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            increment("adapter_calls_total", labels={"tier": tier.value, "outcome": "timeout"})
            raise StoreTimeout(tier, self.timeout) from e
        except (HybridStoreError, ValueError, TypeError):
            # Caller errors and already-classified failures are not adapter outages
            raise
        except Exception as e:
            increment("adapter_calls_total", labels={"tier": tier.value, "outcome": "error"})
            raise StoreUnavailable(tier, f"{type(e).__name__}: {e}") from e
        increment("adapter_calls_total", labels={"tier": tier.value, "outcome": "ok"})
        observe("adapter_latency_seconds", time.perf_counter() - started, labels={"tier": tier.value})
        return result

    def retrying(
        self,
        attempts: Optional[int] = None,
        retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailable,),
    ) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(attempts or self.config.attempts),
            wait=wait_exponential(multiplier=self.config.initial_backoff_seconds, max=self.config.max_backoff_seconds),
            retry=retry_if_exception_type(retry_on),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def retry(self, tier: Tier, operation: Callable[[], Awaitable[T]], attempts: Optional[int] = None) -> T:
        """Run ``operation`` with the deadline, retrying transient failures."""
        return await self.retrying(attempts)(self.call, tier, operation)
