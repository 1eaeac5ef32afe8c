"""
Posting Validator (Domain Logic).

Pure checks run on every postings batch before it is committed.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from ledger_backend.app.core.exceptions import ValidationFailed
from ledger_backend.app.models.ledger_enums import (
    ALLOWED_TYPES_BY_EVENT,
    BatchEventType,
    TransactionType,
)


@dataclass(frozen=True)
class PostingDraft:
    """A posting that has not been committed yet."""
    type: TransactionType
    account_id: int
    amount: int
    idempotency_key: str
    created_at: datetime
    order_id: Optional[str] = None
    settlement_id: Optional[int] = None
    description: Optional[str] = None
    reverses_transaction_id: Optional[int] = None
    reversed_type: Optional[TransactionType] = None


def find_violations(postings: List[PostingDraft], event_type: BatchEventType) -> List[str]:
    """Return every rule the batch breaks, empty when it is valid."""
    if not postings:
        return ["batch is empty"]

    violations = []

    keys = {p.idempotency_key for p in postings}
    if len(keys) != 1:
        violations.append(f"postings carry {len(keys)} different idempotency keys")

    allowed = ALLOWED_TYPES_BY_EVENT.get(event_type, frozenset())
    totals = defaultdict(int)

    for index, posting in enumerate(postings):
        if not isinstance(posting.amount, int) or isinstance(posting.amount, bool):
            violations.append(f"posting #{index} amount {posting.amount!r} is not an integer of minor units")
            continue
        if posting.amount == 0:
            violations.append(f"posting #{index} ({posting.type.value}) has a zero amount")
        if posting.type not in allowed:
            violations.append(
                f"posting #{index} type {posting.type.value} is not allowed for {event_type.value} events"
            )
        totals[posting.order_id] += posting.amount

    for order_id, total in totals.items():
        if total != 0:
            label = order_id if order_id is not None else "<no order>"
            violations.append(f"postings for order {label} sum to {total}, expected 0")

    return violations


def validate_batch(postings: Iterable[PostingDraft], event_type: BatchEventType) -> None:
    """
    Check a batch before commit.

    Rules:
    1. Amounts grouped by order reference sum to zero (the group without an
       order reference included)
    2. Every type is allowed for the triggering event
    3. No zero amounts
    4. One idempotency key for the whole batch

    Raises:
        ValidationFailed: listing every violation found
    """
    postings = list(postings)
    violations = find_violations(postings, event_type)
    if violations:
        raise ValidationFailed(
            f"Postings batch for {event_type.value} event rejected",
            violations=violations,
            details={"idempotency_key": postings[0].idempotency_key if postings else None},
        )
