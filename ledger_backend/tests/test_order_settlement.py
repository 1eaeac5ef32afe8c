"""
Order Settlement Orchestrator Tests.

Validates delivery postings, reversals, duplicate events and reconciliation.
"""

import pytest
from pydantic import ValidationError
from sqlalchemy import select, func

from ledger_backend.app.core.exceptions import ReconciliationConflict
from ledger_backend.app.domain.ledger.balance_aggregator import BalanceAggregator
from ledger_backend.app.domain.ledger.client_debt_policy import AbsorbClientDebt, TrackClientDebt
from ledger_backend.app.domain.ledger.ledger_store import LedgerStore
from ledger_backend.app.domain.ledger.order_settlement import OrderAmounts, OrderSettlementOrchestrator, apply_rate
from ledger_backend.app.models.audit_log import AuditLog
from ledger_backend.app.models.ledger_enums import AccountType, OrderLedgerStatus, TransactionType
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.models.order_ledger_state import OrderLedgerState
from ledger_backend.app.models.posting_batch import PostingBatch
from decimal import Decimal


async def balance_of(db, account_type, owner_ref):
    account = await LedgerStore(db).find_account(account_type, owner_ref)
    return (await BalanceAggregator(db).get_balance(account.id)).available


async def postings_for(db, key):
    return await LedgerStore(db).get_batch_postings(key)


def test_rates_round_half_up():
    assert apply_rate(20000, Decimal("0.15")) == 3000
    assert apply_rate(3, Decimal("0.5")) == 2
    assert apply_rate(1, Decimal("0.5")) == 1
    amounts = OrderAmounts.compute(20000, 3000, Decimal("0.15"), Decimal("0.20"))
    assert (amounts.commission, amounts.margin, amounts.agent_earning) == (3000, 600, 2400)


@pytest.mark.asyncio
async def test_delivered_order_example(db_session, make_order_event):
    """Subtotal 200.00, 15% commission, fee 30.00: restaurant balance 170.00."""
    outcome = await OrderSettlementOrchestrator(db_session).handle_event(make_order_event())

    assert outcome.status == OrderLedgerStatus.DELIVERED
    assert outcome.duplicate is False
    assert len(outcome.batch.transaction_ids) == 7

    postings = await postings_for(db_session, "order:O1:delivered")
    assert sum(p.amount for p in postings) == 0

    by_leg = {(p.account.account_type, p.type): p.amount for p in postings}
    assert by_leg[(AccountType.RESTAURANT, TransactionType.ORDER_REVENUE)] == 20000
    assert by_leg[(AccountType.RESTAURANT, TransactionType.PLATFORM_COMMISSION)] == -3000
    assert by_leg[(AccountType.PLATFORM, TransactionType.PLATFORM_COMMISSION)] == 3000
    assert by_leg[(AccountType.PLATFORM, TransactionType.PLATFORM_DELIVERY_MARGIN)] == 600
    assert by_leg[(AccountType.DELIVERY_AGENT, TransactionType.DELIVERY_EARNING)] == 2400
    assert by_leg[(AccountType.PLATFORM, TransactionType.RESTAURANT_PAYABLE)] == -20000
    assert by_leg[(AccountType.PLATFORM, TransactionType.DELIVERY_PAYABLE)] == -3000

    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 17000
    assert await balance_of(db_session, AccountType.DELIVERY_AGENT, "agent-1") == 2400


@pytest.mark.asyncio
async def test_duplicate_delivered_event_posts_once(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    first = await orchestrator.handle_event(make_order_event())
    second = await orchestrator.handle_event(make_order_event())

    assert second.duplicate is True
    assert second.batch.batch_id == first.batch.batch_id
    total = (await db_session.execute(select(func.count(LedgerTransaction.id)))).scalar()
    assert total == 7
    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 17000


@pytest.mark.asyncio
async def test_cancel_after_delivery_posts_exact_negation(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event())

    outcome = await orchestrator.handle_event(make_order_event(event_type="cancelled"))
    assert outcome.status == OrderLedgerStatus.CANCELLED

    originals = await postings_for(db_session, "order:O1:delivered")
    reversals = await postings_for(db_session, "order:O1:cancelled")
    assert len(reversals) == len(originals)
    for original, reversal in zip(originals, reversals):
        assert reversal.amount == -original.amount
        assert reversal.account_id == original.account_id
        assert reversal.type == TransactionType.PLATFORM_NOT_DELIVERED_REFUND
        assert reversal.reverses_transaction_id == original.id
        assert reversal.reversed_type == original.type

    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 0
    assert await balance_of(db_session, AccountType.PLATFORM, "platform") == 0


@pytest.mark.asyncio
async def test_reversal_is_never_posted_twice(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event())
    await orchestrator.handle_event(make_order_event(event_type="cancelled"))

    again = await orchestrator.handle_event(make_order_event(event_type="cancelled"))
    refunded = await orchestrator.handle_event(make_order_event(event_type="refunded"))

    assert again.duplicate is True
    assert refunded.duplicate is True
    assert refunded.status == OrderLedgerStatus.CANCELLED
    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 0
    batches = (await db_session.execute(select(func.count(PostingBatch.id)))).scalar()
    assert batches == 2


@pytest.mark.asyncio
async def test_created_then_cancelled_posts_nothing(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    created = await orchestrator.handle_event(make_order_event(event_type="created"))
    cancelled = await orchestrator.handle_event(make_order_event(event_type="cancelled"))

    assert created.status == OrderLedgerStatus.PENDING
    assert created.batch is None
    assert cancelled.status == OrderLedgerStatus.CANCELLED
    total = (await db_session.execute(select(func.count(LedgerTransaction.id)))).scalar()
    assert total == 0


@pytest.mark.asyncio
async def test_delivered_after_cancel_is_a_reconciliation_conflict(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event(event_type="created"))
    await orchestrator.handle_event(make_order_event(event_type="cancelled"))

    with pytest.raises(ReconciliationConflict):
        await orchestrator.handle_event(make_order_event())

    flagged = await orchestrator.list_flagged()
    assert [state.order_id for state in flagged] == ["O1"]


@pytest.mark.asyncio
async def test_contradicting_amount_flags_the_order(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event(event_type="created"))

    with pytest.raises(ReconciliationConflict) as exc_info:
        await orchestrator.handle_event(make_order_event(subtotal=25000))
    assert exc_info.value.details["order_id"] == "O1"

    state = (await db_session.execute(
        select(OrderLedgerState).where(OrderLedgerState.order_id == "O1")
    )).scalar_one()
    assert state.flagged is True
    assert "subtotal" in state.flag_reason
    assert state.status == OrderLedgerStatus.PENDING

    total = (await db_session.execute(select(func.count(LedgerTransaction.id)))).scalar()
    assert total == 0

    audit = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == "ORDER_FLAGGED")
    )).scalars().all()
    assert len(audit) == 1


@pytest.mark.asyncio
async def test_flagged_order_is_excluded_until_resolved(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event(event_type="created"))
    with pytest.raises(ReconciliationConflict):
        await orchestrator.handle_event(make_order_event(delivery_fee=5000))

    # Even a consistent event is refused while the flag is set
    with pytest.raises(ReconciliationConflict):
        await orchestrator.handle_event(make_order_event())

    state = await orchestrator.resolve_flag("O1", actor_ref="ops-1", note="amount confirmed with order service")
    assert state.flagged is False

    outcome = await orchestrator.handle_event(make_order_event())
    assert outcome.status == OrderLedgerStatus.DELIVERED
    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 17000


@pytest.mark.asyncio
async def test_cash_order_agent_owes_collected_cash(db_session, make_order_event):
    await OrderSettlementOrchestrator(db_session).handle_event(make_order_event(payment_method="cash"))

    postings = await postings_for(db_session, "order:O1:delivered")
    types = {p.type for p in postings}
    assert TransactionType.CASH_COLLECTED in types
    assert TransactionType.RESTAURANT_PAYABLE not in types

    assert await balance_of(db_session, AccountType.DELIVERY_AGENT, "agent-1") == 2400 - 23000
    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 17000
    assert await balance_of(db_session, AccountType.PLATFORM, "platform") == 3600


@pytest.mark.asyncio
async def test_failed_capture_tracks_client_debt(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session, debt_policy=TrackClientDebt())
    await orchestrator.handle_event(make_order_event(payment_captured=False))

    client = await LedgerStore(db_session).find_account(AccountType.CLIENT, "client-1")
    balance = await BalanceAggregator(db_session).get_balance(client.id)
    assert balance.available == -23000
    assert balance.receivable_pending == -23000
    assert balance.payable_pending == 0


@pytest.mark.asyncio
async def test_failed_capture_absorbed_by_platform(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session, debt_policy=AbsorbClientDebt())
    await orchestrator.handle_event(make_order_event(payment_captured=False))

    types = {p.type for p in await postings_for(db_session, "order:O1:delivered")}
    assert TransactionType.CLIENT_DEBT not in types
    assert TransactionType.RESTAURANT_PAYABLE in types


@pytest.mark.asyncio
async def test_zero_delivery_fee_omits_delivery_legs(db_session, make_order_event):
    await OrderSettlementOrchestrator(db_session).handle_event(make_order_event(delivery_fee=0))

    postings = await postings_for(db_session, "order:O1:delivered")
    assert all(p.amount != 0 for p in postings)
    types = {p.type for p in postings}
    assert TransactionType.DELIVERY_EARNING not in types
    assert TransactionType.DELIVERY_PAYABLE not in types
    assert sum(p.amount for p in postings) == 0


@pytest.mark.asyncio
async def test_default_commission_rate_applies(db_session, make_order_event):
    await OrderSettlementOrchestrator(db_session).handle_event(make_order_event(commission_rate=None))
    assert await balance_of(db_session, AccountType.RESTAURANT, "resto-1") == 17000


def test_commission_rate_beyond_stored_scale_is_rejected(make_order_event):
    with pytest.raises(ValidationError):
        make_order_event(commission_rate=Decimal("0.1234567"))


@pytest.mark.asyncio
async def test_redelivered_event_with_fine_rate_is_a_duplicate(db_session, session_factory, make_order_event):
    event = make_order_event(commission_rate=Decimal("0.123457"))
    first = await OrderSettlementOrchestrator(db_session).handle_event(event)

    # The second delivery reads the recorded rate back from the database
    async with session_factory() as later_session:
        second = await OrderSettlementOrchestrator(later_session).handle_event(event)
        state = (await later_session.execute(
            select(OrderLedgerState).where(OrderLedgerState.order_id == "O1")
        )).scalar_one()

        assert second.duplicate is True
        assert second.batch.batch_id == first.batch.batch_id
        assert state.flagged is False
