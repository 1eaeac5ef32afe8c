"""
Balance Aggregator Tests.

Balances are a pure replay of the postings up to a point in time.
"""

import pytest
from datetime import timedelta

from ledger_backend.app.domain.ledger.balance_aggregator import BalanceAggregator
from ledger_backend.app.domain.ledger.ledger_store import LedgerStore
from ledger_backend.app.domain.ledger.order_settlement import OrderSettlementOrchestrator
from ledger_backend.app.models.ledger_enums import AccountType


@pytest.mark.asyncio
async def test_balance_replays_postings_up_to_as_of(db_session, make_order_event, event_time):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event(order_id="O1", timestamp=event_time))
    await orchestrator.handle_event(make_order_event(order_id="O2", timestamp=event_time + timedelta(days=1)))
    await orchestrator.handle_event(
        make_order_event(order_id="O1", event_type="refunded", timestamp=event_time + timedelta(days=2))
    )

    restaurant = await LedgerStore(db_session).find_account(AccountType.RESTAURANT, "resto-1")
    aggregator = BalanceAggregator(db_session)

    before = await aggregator.get_balance(restaurant.id, as_of=event_time - timedelta(seconds=1))
    after_first = await aggregator.get_balance(restaurant.id, as_of=event_time)
    after_second = await aggregator.get_balance(restaurant.id, as_of=event_time + timedelta(days=1))
    after_refund = await aggregator.get_balance(restaurant.id, as_of=event_time + timedelta(days=2))

    assert before.available == 0
    assert after_first.available == 17000
    assert after_second.available == 34000
    assert after_refund.available == 17000


@pytest.mark.asyncio
async def test_pending_payables_follow_effective_type(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event(order_id="O1"))
    await orchestrator.handle_event(make_order_event(order_id="O2"))
    await orchestrator.handle_event(make_order_event(order_id="O2", event_type="cancelled"))

    restaurant = await LedgerStore(db_session).find_account(AccountType.RESTAURANT, "resto-1")
    balance = await BalanceAggregator(db_session).get_balance(restaurant.id)

    # Reversals of payables stay in the payable class
    assert balance.payable_pending == 17000
    assert balance.receivable_pending == 0


@pytest.mark.asyncio
async def test_platform_has_no_pending_amounts(db_session, make_order_event):
    await OrderSettlementOrchestrator(db_session).handle_event(make_order_event())

    platform = await LedgerStore(db_session).get_platform_account()
    balance = await BalanceAggregator(db_session).get_balance(platform.id)

    assert balance.available == 3600 - 23000
    assert balance.payable_pending == 0
    assert balance.receivable_pending == 0


@pytest.mark.asyncio
async def test_totals_by_account_type_net_to_zero(db_session, make_order_event):
    orchestrator = OrderSettlementOrchestrator(db_session)
    await orchestrator.handle_event(make_order_event(order_id="O1"))
    await orchestrator.handle_event(make_order_event(order_id="O2", payment_method="cash", restaurant_id="resto-2"))

    totals = await BalanceAggregator(db_session).totals_by_account_type()

    assert totals[AccountType.RESTAURANT] == 34000
    assert totals[AccountType.CLIENT] == 0
    assert sum(totals.values()) == 0
