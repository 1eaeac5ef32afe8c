"""
Failure Injection Tests.

Validates resilience against store and payout rail failures.
"""

import logging

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from ledger_backend.app.core.exceptions import StoreUnavailable, ValidationFailed
from ledger_backend.app.core.reliability import CircuitBreaker, CircuitOpenError, retry_with_backoff
from ledger_backend.app.domain.ledger.ledger_store import translate_store_errors
from ledger_backend.app.domain.ledger.order_settlement import OrderSettlementOrchestrator
from ledger_backend.app.models.ledger_enums import AccountType
from ledger_backend.app.services.payout_rail import HttpPayoutRail, PayoutRequest, PayoutRequestError


def payout_request(attempt=1):
    return PayoutRequest(
        settlement_id=7,
        attempt=attempt,
        account_id=3,
        account_type=AccountType.RESTAURANT,
        owner_ref="resto-1",
        amount=3500,
    )


@pytest.mark.asyncio
async def test_circuit_breaker_activates():
    """Test that circuit breaker opens after threshold failures."""
    cb = CircuitBreaker(failure_threshold=2, reset_timeout=60)

    async def failing_func():
        raise ValueError("Boom")

    for _ in range(2):
        with pytest.raises(ValueError):
            await cb.call(failing_func)

    with pytest.raises(CircuitOpenError):
        await cb.call(failing_func)


@pytest.mark.asyncio
async def test_circuit_breaker_closes_after_successful_trial_call():
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=0)

    async def failing_func():
        raise ValueError("Boom")

    async def ok():
        return "ok"

    with pytest.raises(ValueError):
        await cb.call(failing_func)
    assert cb.state == "OPEN"

    assert await cb.call(ok) == "ok"
    assert cb.state == "CLOSED"
    assert cb.failures == 0


@pytest.mark.asyncio
async def test_retry_with_backoff_recovers_from_transient_failure():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StoreUnavailable()
        return "committed"

    assert await retry_with_backoff(flaky, attempts=3, base_delay=0) == "committed"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_with_backoff_gives_up():
    calls = []

    async def down():
        calls.append(1)
        raise StoreUnavailable()

    with pytest.raises(StoreUnavailable):
        await retry_with_backoff(down, attempts=2, base_delay=0)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_validation_failures_are_never_retried():
    calls = []

    async def broken():
        calls.append(1)
        raise ValidationFailed("bad batch", violations=["postings for order O1 sum to 5, expected 0"])

    with pytest.raises(ValidationFailed):
        await retry_with_backoff(broken, attempts=3, base_delay=0)
    assert len(calls) == 1


def test_driver_errors_become_store_unavailable():
    with pytest.raises(StoreUnavailable) as exc_info:
        with translate_store_errors("append_batch"):
            raise OperationalError("INSERT", {}, Exception("database is locked"))
    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_orchestrator_store_failure_is_retryable(db_session, make_order_event, mocker):
    """A failed commit surfaces as StoreUnavailable and the retry posts once."""
    orchestrator = OrderSettlementOrchestrator(db_session)
    original_commit = db_session.commit
    failures = []

    async def commit_failing_once():
        if not failures:
            failures.append(1)
            raise OperationalError("COMMIT", {}, Exception("connection reset"))
        return await original_commit()

    mocker.patch.object(db_session, "commit", side_effect=commit_failing_once)

    outcome = await retry_with_backoff(
        lambda: orchestrator.handle_event(make_order_event()), attempts=3, base_delay=0
    )

    assert outcome.duplicate is False
    assert len(outcome.batch.transaction_ids) == 7
    assert failures == [1]


@pytest.mark.asyncio
async def test_http_payout_rail_sends_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"reference": "tr_123"})

    rail = HttpPayoutRail(
        "http://rail.test",
        breaker=CircuitBreaker(failure_threshold=2, reset_timeout=60),
        transport=httpx.MockTransport(handler),
    )

    assert await rail.request_payout(payout_request()) == "tr_123"
    assert seen[0].headers["Idempotency-Key"] == "settlement:7:attempt:1"
    assert seen[0].url.path == "/payouts"


@pytest.mark.asyncio
async def test_http_payout_rail_failures_open_the_circuit():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(502, json={"error": "upstream"})

    rail = HttpPayoutRail(
        "http://rail.test",
        breaker=CircuitBreaker(failure_threshold=2, reset_timeout=60),
        transport=httpx.MockTransport(handler),
    )

    for attempt in (1, 2, 3):
        with pytest.raises(PayoutRequestError):
            await rail.request_payout(payout_request(attempt))

    # The third request is refused by the open circuit without reaching the rail
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_with_backoff_logs_each_retry(caplog):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StoreUnavailable("database restarting")
        return "committed"

    with caplog.at_level(logging.WARNING, logger="ledger.reliability"):
        assert await retry_with_backoff(flaky, attempts=3, base_delay=0) == "committed"

    retries = [r for r in caplog.records if r.getMessage() == "Ledger store unavailable, retrying"]
    assert [r.attempt for r in retries] == [1, 2]
    assert retries[0].reason == "database restarting"
