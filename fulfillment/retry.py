"""Bounded exponential backoff for outbound provider calls"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from fulfillment.config import settings
from fulfillment.errors import ProviderError, ProviderUnreachable, RateLimited

logger = structlog.get_logger()

T = TypeVar("T")


class RetryPolicy:
    """Retry limits and the backoff curve"""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
    ):
        self.max_retries = settings.provider_max_retries if max_retries is None else max_retries
        self.base_delay_ms = settings.retry_base_delay_ms if base_delay_ms is None else base_delay_ms
        self.max_delay_ms = settings.retry_max_delay_ms if max_delay_ms is None else max_delay_ms

    def delay_ms(self, retry_number: int) -> int:
        """Delay before the given retry (1-based): 1s, 2s, 4s ... capped"""
        return min(self.base_delay_ms * 2 ** (retry_number - 1), self.max_delay_ms)


class RetryExecutor:
    """
    Runs a provider call, retrying transient failures with backoff.

    Calls are treated as unsafe to repeat unless they are declared safe
    (reads, cancels) or carry an idempotency key the provider honours.
    An unsafe call is only retried when the failure shows the provider
    never acted on it.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def should_retry(self, error: ProviderError, repeatable: bool) -> bool:
        if not error.transient:
            return False
        if repeatable:
            return True
        if isinstance(error, RateLimited):
            return True
        return isinstance(error, ProviderUnreachable) and not error.request_sent

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        provider: Optional[str] = None,
        safe: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> T:
        repeatable = safe or bool(idempotency_key)
        attempt = 0

        while True:
            attempt += 1
            try:
                return await operation()
            except ProviderError as e:
                if attempt > self.policy.max_retries or not self.should_retry(e, repeatable):
                    logger.warning(
                        "Provider call failed",
                        provider=provider,
                        operation=name,
                        attempt=attempt,
                        error_code=e.code,
                        error=e.message,
                    )
                    raise

                delay_ms = self.policy.delay_ms(attempt)
                logger.info(
                    "Retrying provider call",
                    provider=provider,
                    operation=name,
                    attempt=attempt,
                    max_retries=self.policy.max_retries,
                    delay_ms=delay_ms,
                    error_code=e.code,
                )
                await self.sleep(delay_ms / 1000)
