"""
Reliability Utilities.

Includes the Circuit Breaker pattern (guards the payout rail) and
retry-with-backoff for transient ledger store failures.
"""

import time
import logging
from typing import Awaitable, Callable, Any, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger_backend.app.core.config import settings
from ledger_backend.app.core.exceptions import StoreUnavailable

logger = logging.getLogger("ledger.reliability")


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    After `failure_threshold` failures in a row the circuit opens and rejects
    calls for `reset_timeout` seconds; then a single trial call is let
    through (HALF_OPEN) and its outcome closes or re-opens the circuit.
    """
    def __init__(self, failure_threshold: int = 5, reset_timeout: int = 60, name: str = "circuit"):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self.failures = 0
        self.opened_at = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.monotonic() - self.opened_at < self.reset_timeout:
                raise CircuitOpenError(f"{self.name} circuit is OPEN")
            self.state = "HALF_OPEN"

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning("Circuit opened", extra={"circuit": self.name, "failures": self.failures})
            self.state = "OPEN"
            self.opened_at = time.monotonic()

    def reset_state(self):
        if self.state != "CLOSED":
            logger.info("Circuit closed", extra={"circuit": self.name})
        self.failures = 0
        self.state = "CLOSED"


def log_store_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception()
    logger.warning(
        "Ledger store unavailable, retrying",
        extra={
            "attempt": retry_state.attempt_number,
            "delay_s": retry_state.next_action.sleep if retry_state.next_action else 0,
            "reason": getattr(exc, "message", str(exc)),
        }
    )


async def retry_with_backoff(
    operation: Callable[[], Awaitable[Any]],
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> Any:
    """
    Run `operation` again on StoreUnavailable, doubling the delay each time.

    Only safe for operations keyed by an idempotency key: a retried append
    either commits once or replays the committed batch.
    """
    attempts = attempts or settings.store_retry_attempts
    delay = settings.store_retry_base_delay if base_delay is None else base_delay

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(StoreUnavailable),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay, min=0),
        before_sleep=log_store_retry,
        reraise=True,
    )
    try:
        return await retrying(operation)
    except StoreUnavailable:
        logger.error("Ledger store still unavailable after %s attempts", attempts)
        raise


# Global instance for payout rail calls
payout_circuit_breaker = CircuitBreaker(
    failure_threshold=settings.payout_circuit_failure_threshold,
    reset_timeout=settings.payout_circuit_reset_timeout,
    name="payout_rail",
)
