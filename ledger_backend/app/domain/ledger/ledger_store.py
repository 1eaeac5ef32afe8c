"""
Ledger Store (Domain Logic).

Append-only access to accounts, posting batches and postings.
Writes are flushed into the caller's unit of work; the caller commits.
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.core.exceptions import ResourceNotFoundError, StoreUnavailable
from ledger_backend.app.domain.ledger.posting_validator import PostingDraft, validate_batch
from ledger_backend.app.models.account import Account
from ledger_backend.app.models.ledger_enums import AccountType, BatchEventType, PLATFORM_OWNER_REF
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.models.posting_batch import PostingBatch

logger = logging.getLogger("ledger.store")

# Conflict-ignoring INSERT per supported backend
INSERT_BY_DIALECT = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class BatchResult:
    """Outcome of an append: the committed batch, or the one it replayed."""
    batch_id: int
    idempotency_key: str
    transaction_ids: List[int]
    replayed: bool = False


@contextmanager
def translate_store_errors(operation: str):
    """Re-raise transient driver failures as StoreUnavailable."""
    try:
        yield
    except (OperationalError, InterfaceError, asyncio.TimeoutError) as exc:
        logger.warning("Ledger store error during %s: %s", operation, exc)
        raise StoreUnavailable(f"Ledger store unavailable during {operation}") from exc


class LedgerStore:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_account(self, account_id: int) -> Account:
        with translate_store_errors("get_account"):
            account = await self.db.get(Account, account_id)
        if account is None:
            raise ResourceNotFoundError("Account", account_id)
        return account

    async def find_account(self, account_type: AccountType, owner_ref: str) -> Optional[Account]:
        with translate_store_errors("find_account"):
            result = await self.db.execute(
                select(Account).where(
                    Account.account_type == account_type,
                    Account.owner_ref == owner_ref,
                )
            )
            return result.scalar_one_or_none()

    async def get_or_create_account(self, account_type: AccountType, owner_ref: str) -> Account:
        """
        Resolve the account for (type, owner), creating it on first use.

        The insert skips a row a concurrent writer created first, so losing
        the creation race never discards other pending writes of the unit of
        work; the winner's row is read back either way.
        """
        account = await self.find_account(account_type, owner_ref)
        if account is not None:
            return account

        insert = INSERT_BY_DIALECT[self.db.get_bind().dialect.name]
        statement = (
            insert(Account)
            .values(account_type=account_type, owner_ref=owner_ref)
            .on_conflict_do_nothing(index_elements=["account_type", "owner_ref"])
        )
        with translate_store_errors("create_account"):
            result = await self.db.execute(statement)
        account = await self.find_account(account_type, owner_ref)

        if result.rowcount:
            logger.info(
                "Ledger account created",
                extra={"account_id": account.id, "account_type": account_type.value, "owner_ref": owner_ref}
            )
        return account

    async def get_platform_account(self) -> Account:
        return await self.get_or_create_account(AccountType.PLATFORM, PLATFORM_OWNER_REF)

    async def find_batch(self, idempotency_key: str) -> Optional[BatchResult]:
        """Return the committed batch for a key, marked as a replay."""
        with translate_store_errors("find_batch"):
            result = await self.db.execute(
                select(PostingBatch).where(PostingBatch.idempotency_key == idempotency_key)
            )
            batch = result.scalar_one_or_none()
            if batch is None:
                return None

            ids = await self.db.execute(
                select(LedgerTransaction.id)
                .where(LedgerTransaction.batch_id == batch.id)
                .order_by(LedgerTransaction.id)
            )
            return BatchResult(
                batch_id=batch.id,
                idempotency_key=batch.idempotency_key,
                transaction_ids=list(ids.scalars().all()),
                replayed=True,
            )

    async def get_batch_postings(self, idempotency_key: str) -> List[LedgerTransaction]:
        """Postings of a committed batch in insertion order, empty if unknown."""
        with translate_store_errors("get_batch_postings"):
            result = await self.db.execute(
                select(LedgerTransaction)
                .join(PostingBatch, PostingBatch.id == LedgerTransaction.batch_id)
                .where(PostingBatch.idempotency_key == idempotency_key)
                .order_by(LedgerTransaction.id)
            )
            return list(result.scalars().all())

    async def append_batch(
        self,
        postings: Iterable[PostingDraft],
        event_type: BatchEventType,
        order_id: Optional[str] = None,
        settlement_id: Optional[int] = None,
    ) -> BatchResult:
        """
        Append a postings batch exactly once.

        Flow:
        1. Validate (ValidationFailed, never retryable)
        2. Idempotency check on the batch key (replay the prior result)
        3. Insert header and postings in the current transaction
        4. A concurrent duplicate losing the unique-key race is rolled back
           and answered with the winner's result

        Raises:
            ValidationFailed: the batch breaks a posting rule
            StoreUnavailable: transient storage failure, safe to retry
        """
        postings = list(postings)
        validate_batch(postings, event_type)
        key = postings[0].idempotency_key

        existing = await self.find_batch(key)
        if existing is not None:
            logger.info("Postings batch replayed", extra={"idempotency_key": key, "batch_id": existing.batch_id})
            return existing

        batch = PostingBatch(
            idempotency_key=key,
            event_type=event_type,
            order_id=order_id,
            settlement_id=settlement_id,
        )
        self.db.add(batch)
        try:
            with translate_store_errors("append_batch"):
                await self.db.flush()  # To get batch.id

                rows = [
                    LedgerTransaction(
                        batch_id=batch.id,
                        idempotency_key=key,
                        account_id=draft.account_id,
                        order_id=draft.order_id,
                        settlement_id=draft.settlement_id,
                        type=draft.type,
                        amount=draft.amount,
                        description=draft.description,
                        reverses_transaction_id=draft.reverses_transaction_id,
                        reversed_type=draft.reversed_type,
                        created_at=draft.created_at,
                    )
                    for draft in postings
                ]
                self.db.add_all(rows)
                await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            winner = await self.find_batch(key)
            if winner is None:
                raise
            logger.info("Concurrent duplicate batch collapsed", extra={"idempotency_key": key})
            return winner

        logger.info(
            "Postings batch appended",
            extra={
                "idempotency_key": key,
                "batch_id": batch.id,
                "event_type": event_type.value,
                "postings": len(rows),
            }
        )
        return BatchResult(
            batch_id=batch.id,
            idempotency_key=key,
            transaction_ids=[row.id for row in rows],
        )
