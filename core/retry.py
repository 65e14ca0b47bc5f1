"""
Retry Coordinator — bounded exponential backoff around a processing attempt.

Delay before attempt n+1 is ``base_delay * 2**(n-1)`` (1s, 2s, 4s…). Only
errors that ``is_retryable`` accepts are retried; permanent errors and a
plain ``False`` result end the loop immediately.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import is_retryable

logger = structlog.get_logger()


class RetryCoordinator:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def _log_retry(self, context: dict[str, Any]):
        def before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "processing_retry_scheduled",
                attempt=state.attempt_number,
                delay=state.next_action.sleep if state.next_action else 0,
                error=str(exc),
                **context,
            )
        return before_sleep

    async def run(self, attempt: Callable[[], Awaitable[bool]], **context: Any) -> bool:
        """
        Await ``attempt()`` until it returns, raises a permanent error, or the
        attempt budget is spent. The last error is re-raised unchanged.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2, min=self.base_delay),
            retry=retry_if_exception(is_retryable),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._log_retry(context),
        )
        async for state in retrying:
            with state:
                result = await attempt()
        return result
