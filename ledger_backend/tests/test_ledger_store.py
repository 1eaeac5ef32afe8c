"""
Ledger Store Tests.

Validates atomic, exactly-once batch appends and immutability.
"""

import pytest
from sqlalchemy import select, func

from ledger_backend.app.core.exceptions import ValidationFailed, ResourceNotFoundError
from ledger_backend.app.domain.ledger.ledger_store import LedgerStore
from ledger_backend.app.domain.ledger.posting_validator import PostingDraft
from ledger_backend.app.models.ledger_enums import AccountType, BatchEventType, TransactionType
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.models.posting_batch import PostingBatch


async def count(db, model):
    return (await db.execute(select(func.count(model.id)))).scalar()


async def revenue_batch(store, event_time, key="order:O1:delivered", amount=20000):
    restaurant = await store.get_or_create_account(AccountType.RESTAURANT, "resto-1")
    platform = await store.get_platform_account()
    return [
        PostingDraft(TransactionType.ORDER_REVENUE, restaurant.id, amount, key, event_time, order_id="O1"),
        PostingDraft(TransactionType.RESTAURANT_PAYABLE, platform.id, -amount, key, event_time, order_id="O1"),
    ]


@pytest.mark.asyncio
async def test_get_or_create_account_is_idempotent(db_session):
    store = LedgerStore(db_session)

    first = await store.get_or_create_account(AccountType.RESTAURANT, "resto-1")
    await db_session.commit()
    second = await store.get_or_create_account(AccountType.RESTAURANT, "resto-1")
    other_type = await store.get_or_create_account(AccountType.CLIENT, "resto-1")

    assert first.id == second.id
    assert other_type.id != first.id


@pytest.mark.asyncio
async def test_platform_account_is_a_singleton(db_session):
    store = LedgerStore(db_session)
    platform = await store.get_platform_account()
    await db_session.commit()

    assert (await store.get_platform_account()).id == platform.id
    assert platform.owner_ref == "platform"


@pytest.mark.asyncio
async def test_get_unknown_account_raises(db_session):
    with pytest.raises(ResourceNotFoundError):
        await LedgerStore(db_session).get_account(999)


@pytest.mark.asyncio
async def test_append_batch_commits_all_postings(db_session, event_time):
    store = LedgerStore(db_session)
    postings = await revenue_batch(store, event_time)

    result = await store.append_batch(postings, BatchEventType.DELIVERED, order_id="O1")
    await db_session.commit()

    assert result.replayed is False
    assert len(result.transaction_ids) == 2
    assert await count(db_session, LedgerTransaction) == 2
    assert await count(db_session, PostingBatch) == 1


@pytest.mark.asyncio
async def test_same_key_replays_prior_result(db_session, event_time):
    """Submitting the same batch twice results in exactly one set of postings."""
    store = LedgerStore(db_session)
    postings = await revenue_batch(store, event_time)

    first = await store.append_batch(postings, BatchEventType.DELIVERED, order_id="O1")
    await db_session.commit()
    second = await store.append_batch(postings, BatchEventType.DELIVERED, order_id="O1")
    await db_session.commit()

    assert second.replayed is True
    assert second.batch_id == first.batch_id
    assert second.transaction_ids == first.transaction_ids
    assert await count(db_session, LedgerTransaction) == 2


@pytest.mark.asyncio
async def test_invalid_batch_writes_nothing(db_session, event_time):
    store = LedgerStore(db_session)
    postings = await revenue_batch(store, event_time)
    await db_session.commit()
    unbalanced = postings[:1]

    with pytest.raises(ValidationFailed):
        await store.append_batch(unbalanced, BatchEventType.DELIVERED, order_id="O1")
    await db_session.rollback()

    assert await count(db_session, LedgerTransaction) == 0
    assert await count(db_session, PostingBatch) == 0


@pytest.mark.asyncio
async def test_postings_are_immutable(db_session, event_time):
    store = LedgerStore(db_session)
    result = await store.append_batch(await revenue_batch(store, event_time), BatchEventType.DELIVERED)
    await db_session.commit()

    posting = await db_session.get(LedgerTransaction, result.transaction_ids[0])
    posting.amount = 1

    with pytest.raises(RuntimeError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_get_batch_postings_in_insertion_order(db_session, event_time):
    store = LedgerStore(db_session)
    await store.append_batch(await revenue_batch(store, event_time), BatchEventType.DELIVERED)
    await db_session.commit()

    postings = await store.get_batch_postings("order:O1:delivered")
    assert [p.type for p in postings] == [TransactionType.ORDER_REVENUE, TransactionType.RESTAURANT_PAYABLE]
    assert await store.get_batch_postings("order:missing:delivered") == []
