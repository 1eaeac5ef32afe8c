"""
Order Settlement Orchestrator (Domain Logic).

Turns order lifecycle events into postings batches.
Each event is one unit of work: it commits, or rolls back and raises.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.core.config import settings
from ledger_backend.app.core.exceptions import (
    ReconciliationConflict,
    ResourceNotFoundError,
    StoreUnavailable,
    ValidationFailed,
)
from ledger_backend.app.core.timeutils import to_utc, utcnow
from ledger_backend.app.domain.ledger.client_debt_policy import ClientDebtPolicy, get_client_debt_policy
from ledger_backend.app.domain.ledger.ledger_store import BatchResult, LedgerStore, translate_store_errors
from ledger_backend.app.domain.ledger.posting_validator import PostingDraft
from ledger_backend.app.models.account import Account
from ledger_backend.app.models.ledger_enums import (
    AccountType,
    BatchEventType,
    ORDER_EVENT_BATCH_TYPES,
    OrderEventType,
    OrderLedgerStatus,
    PaymentMethod,
    TransactionType,
)
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.models.order_ledger_state import OrderLedgerState
from ledger_backend.app.schemas.ledger import OrderEvent
from ledger_backend.app.services.audit import log_event, AuditAction

logger = logging.getLogger("ledger.orders")

UNIT = Decimal("1")
# Scale of order_ledger_states.commission_rate
RATE_QUANTUM = Decimal("0.000001")

REVERSED_STATUSES = {OrderLedgerStatus.CANCELLED, OrderLedgerStatus.REFUNDED}

EVENT_STATUS = {
    OrderEventType.CREATED: OrderLedgerStatus.PENDING,
    OrderEventType.DELIVERED: OrderLedgerStatus.DELIVERED,
    OrderEventType.CANCELLED: OrderLedgerStatus.CANCELLED,
    OrderEventType.REFUNDED: OrderLedgerStatus.REFUNDED,
}


def idempotency_key(order_id: str, event_type: OrderEventType) -> str:
    return f"order:{order_id}:{event_type.value}"


def apply_rate(amount: int, rate: Decimal) -> int:
    """Rate of an integer amount, rounded half-up to the minor unit."""
    return int((Decimal(amount) * rate).quantize(UNIT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class OrderAmounts:
    subtotal: int
    delivery_fee: int
    commission: int
    margin: int

    @property
    def agent_earning(self) -> int:
        return self.delivery_fee - self.margin

    @property
    def order_total(self) -> int:
        return self.subtotal + self.delivery_fee

    @classmethod
    def compute(cls, subtotal: int, delivery_fee: int, commission_rate: Decimal, margin_rate: Decimal) -> "OrderAmounts":
        return cls(
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            commission=apply_rate(subtotal, commission_rate),
            margin=apply_rate(delivery_fee, margin_rate),
        )


@dataclass(frozen=True)
class OrderParties:
    restaurant: Account
    delivery_agent: Account
    client: Account
    platform: Account


@dataclass(frozen=True)
class OrderEventOutcome:
    order_id: str
    event_type: OrderEventType
    status: OrderLedgerStatus
    duplicate: bool = False
    batch: Optional[BatchResult] = None


class OrderSettlementOrchestrator:

    def __init__(
        self,
        db: AsyncSession,
        debt_policy: Optional[ClientDebtPolicy] = None,
        margin_rate: Optional[Decimal] = None,
    ):
        self.db = db
        self.store = LedgerStore(db)
        self.debt_policy = debt_policy or get_client_debt_policy(settings.client_debt_policy)
        self.margin_rate = settings.delivery_margin_rate if margin_rate is None else margin_rate

    async def handle_event(self, event: OrderEvent) -> OrderEventOutcome:
        """
        Process one order lifecycle event.

        Raises:
            ReconciliationConflict: event contradicts the order's history, or the
                order is flagged (the flag is committed before raising)
            ValidationFailed: the built batch is invalid (audited, never retried)
            StoreUnavailable: transient failure, retry with the same event
        """
        try:
            return await self._handle(event)
        except ValidationFailed as exc:
            await self.db.rollback()
            logger.error(
                "Order event produced an invalid batch",
                extra={"order_id": event.order_id, "event_type": event.event_type.value, "violations": exc.violations}
            )
            await log_event(
                self.db,
                action=AuditAction.BATCH_REJECTED,
                target_type="order",
                target_ref=event.order_id,
                metadata={"event_type": event.event_type.value, "violations": exc.violations},
            )
            await self.db.commit()
            raise
        except StoreUnavailable:
            await self.db.rollback()
            raise

    async def _handle(self, event: OrderEvent) -> OrderEventOutcome:
        commission_rate = settings.default_commission_rate if event.commission_rate is None else event.commission_rate
        commission_rate = commission_rate.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)
        parties = await self._resolve_parties(event)

        state, created = await self._lock_state(event, commission_rate)
        if state.flagged:
            logger.warning(
                "Event for flagged order skipped",
                extra={"order_id": event.order_id, "event_type": event.event_type.value}
            )
            raise ReconciliationConflict(
                event.order_id,
                f"Order {event.order_id} is flagged for review and excluded from automated processing",
                details={"flag_reason": state.flag_reason},
            )

        mismatches = self._find_mismatches(state, event, commission_rate)
        if mismatches:
            await self._flag(state, "; ".join(mismatches), event)

        if event.event_type == OrderEventType.CREATED:
            return await self._finish(state, event, duplicate=not created)

        if event.event_type == OrderEventType.DELIVERED:
            return await self._on_delivered(state, event, parties, commission_rate)

        return await self._on_reversal(state, event)

    async def _finish(self, state: OrderLedgerState, event: OrderEvent, duplicate: bool = False) -> OrderEventOutcome:
        status = state.status
        with translate_store_errors("commit_order_event"):
            await self.db.commit()
        return OrderEventOutcome(
            order_id=event.order_id,
            event_type=event.event_type,
            status=status,
            duplicate=duplicate,
        )

    async def _on_delivered(
        self,
        state: OrderLedgerState,
        event: OrderEvent,
        parties: OrderParties,
        commission_rate: Decimal,
    ) -> OrderEventOutcome:
        key = idempotency_key(event.order_id, OrderEventType.DELIVERED)

        if state.status == OrderLedgerStatus.DELIVERED:
            prior = await self.store.find_batch(key)
            await self.db.commit()
            logger.info("Duplicate delivered event ignored", extra={"order_id": event.order_id})
            return OrderEventOutcome(event.order_id, event.event_type, OrderLedgerStatus.DELIVERED, True, prior)

        if state.status in REVERSED_STATUSES:
            await self._flag(
                state,
                f"delivered event received after the order was {state.status.value.lower()}",
                event,
            )

        amounts = OrderAmounts.compute(event.subtotal, event.delivery_fee, commission_rate, self.margin_rate)
        drafts = self.build_delivery_postings(event, parties, amounts, key)
        result = await self.store.append_batch(drafts, BatchEventType.DELIVERED, order_id=event.order_id)
        return await self._commit_transition(state, event, OrderLedgerStatus.DELIVERED, result)

    async def _on_reversal(self, state: OrderLedgerState, event: OrderEvent) -> OrderEventOutcome:
        target = EVENT_STATUS[event.event_type]
        key = idempotency_key(event.order_id, event.event_type)

        if state.status in REVERSED_STATUSES:
            # A reversal is posted once per order, whichever event triggered it
            prior = await self.store.find_batch(key)
            await self.db.commit()
            logger.info(
                "Reversal event ignored, order already reversed",
                extra={"order_id": event.order_id, "event_type": event.event_type.value, "status": state.status.value}
            )
            return OrderEventOutcome(event.order_id, event.event_type, state.status, True, prior)

        if state.status == OrderLedgerStatus.PENDING:
            state.status = target
            return await self._finish(state, event)

        originals = await self.store.get_batch_postings(idempotency_key(event.order_id, OrderEventType.DELIVERED))
        if not originals:
            await self._flag(state, "order is delivered but its delivery postings are missing", event)

        drafts = self.build_reversal_postings(event, originals, key)
        result = await self.store.append_batch(drafts, ORDER_EVENT_BATCH_TYPES[event.event_type], order_id=event.order_id)
        return await self._commit_transition(state, event, target, result)

    async def _commit_transition(
        self,
        state: OrderLedgerState,
        event: OrderEvent,
        target: OrderLedgerStatus,
        result: BatchResult,
    ) -> OrderEventOutcome:
        if result.replayed:
            # Lost the race to a concurrent delivery of the same event; the
            # session was rolled back and the winner already moved the state.
            return OrderEventOutcome(event.order_id, event.event_type, target, True, result)

        state.status = target
        with translate_store_errors("commit_order_event"):
            await self.db.commit()
        logger.info(
            "Order event posted",
            extra={"order_id": event.order_id, "event_type": event.event_type.value, "batch_id": result.batch_id}
        )
        return OrderEventOutcome(event.order_id, event.event_type, target, False, result)

    def build_delivery_postings(
        self,
        event: OrderEvent,
        parties: OrderParties,
        amounts: OrderAmounts,
        key: str,
    ) -> List[PostingDraft]:
        """
        Postings for a delivered order.

        Participant legs credit the restaurant (revenue minus commission), the
        delivery agent (fee minus margin) and the platform (commission and
        margin). The funding legs depend on how the order was paid.
        """
        at = to_utc(event.timestamp)
        order_id = event.order_id

        def leg(tx_type: TransactionType, account: Account, amount: int, description: str) -> Optional[PostingDraft]:
            if amount == 0:
                return None
            return PostingDraft(
                type=tx_type,
                account_id=account.id,
                amount=amount,
                idempotency_key=key,
                created_at=at,
                order_id=order_id,
                description=f"{description} - order {order_id}",
            )

        legs = [
            leg(TransactionType.ORDER_REVENUE, parties.restaurant, amounts.subtotal, "Order revenue"),
            leg(TransactionType.PLATFORM_COMMISSION, parties.restaurant, -amounts.commission, "Platform commission"),
            leg(TransactionType.PLATFORM_COMMISSION, parties.platform, amounts.commission, "Platform commission"),
            leg(TransactionType.DELIVERY_EARNING, parties.delivery_agent, amounts.agent_earning, "Delivery earning"),
            leg(TransactionType.PLATFORM_DELIVERY_MARGIN, parties.platform, amounts.margin, "Delivery margin"),
        ]

        if event.payment_method == PaymentMethod.CASH:
            legs.append(leg(
                TransactionType.CASH_COLLECTED, parties.delivery_agent, -amounts.order_total, "Cash collected on delivery"
            ))
        elif not event.payment_captured and self.debt_policy.records_debt(event):
            legs.append(leg(
                TransactionType.CLIENT_DEBT, parties.client, -amounts.order_total, "Unpaid order owed by client"
            ))
        else:
            legs.append(leg(
                TransactionType.RESTAURANT_PAYABLE, parties.platform, -amounts.subtotal, "Payable to restaurant"
            ))
            legs.append(leg(
                TransactionType.DELIVERY_PAYABLE, parties.platform, -amounts.delivery_fee, "Payable to delivery agent"
            ))

        return [draft for draft in legs if draft is not None]

    def build_reversal_postings(
        self,
        event: OrderEvent,
        originals: List[LedgerTransaction],
        key: str,
    ) -> List[PostingDraft]:
        """Exact negation of the delivery postings, never a mutation of them."""
        at = to_utc(event.timestamp)
        return [
            PostingDraft(
                type=TransactionType.PLATFORM_NOT_DELIVERED_REFUND,
                account_id=original.account_id,
                amount=-original.amount,
                idempotency_key=key,
                created_at=at,
                order_id=event.order_id,
                description=f"Reversal of {original.type.value} ({event.event_type.value}) - order {event.order_id}",
                reverses_transaction_id=original.id,
                reversed_type=original.type,
            )
            for original in originals
        ]

    async def _resolve_parties(self, event: OrderEvent) -> OrderParties:
        return OrderParties(
            restaurant=await self.store.get_or_create_account(AccountType.RESTAURANT, event.restaurant_id),
            delivery_agent=await self.store.get_or_create_account(AccountType.DELIVERY_AGENT, event.delivery_agent_id),
            client=await self.store.get_or_create_account(AccountType.CLIENT, event.client_id),
            platform=await self.store.get_platform_account(),
        )

    async def _lock_state(self, event: OrderEvent, commission_rate: Decimal) -> Tuple[OrderLedgerState, bool]:
        """Load the order row FOR UPDATE (single writer per order), creating it on first event."""
        with translate_store_errors("lock_order_state"):
            result = await self.db.execute(
                select(OrderLedgerState)
                .where(OrderLedgerState.order_id == event.order_id)
                .with_for_update()
            )
            state = result.scalar_one_or_none()
            if state is not None:
                return state, False

            state = OrderLedgerState(
                order_id=event.order_id,
                status=OrderLedgerStatus.PENDING,
                restaurant_ref=event.restaurant_id,
                delivery_agent_ref=event.delivery_agent_id,
                client_ref=event.client_id,
                subtotal=event.subtotal,
                delivery_fee=event.delivery_fee,
                commission_rate=commission_rate,
                payment_method=event.payment_method,
                flagged=False,
            )
            self.db.add(state)
            try:
                await self.db.flush()
            except IntegrityError as exc:
                await self.db.rollback()
                raise StoreUnavailable(
                    f"Order {event.order_id} is being processed concurrently",
                    details={"order_id": event.order_id},
                ) from exc
            return state, True

    @staticmethod
    def _find_mismatches(state: OrderLedgerState, event: OrderEvent, commission_rate: Decimal) -> List[str]:
        checks = [
            ("subtotal", state.subtotal, event.subtotal),
            ("delivery_fee", state.delivery_fee, event.delivery_fee),
            ("commission_rate", Decimal(state.commission_rate), commission_rate),
            ("payment_method", state.payment_method, event.payment_method),
            ("restaurant_id", state.restaurant_ref, event.restaurant_id),
            ("delivery_agent_id", state.delivery_agent_ref, event.delivery_agent_id),
            ("client_id", state.client_ref, event.client_id),
        ]
        return [
            f"{name} {reported!s} contradicts recorded {recorded!s}"
            for name, recorded, reported in checks
            if recorded != reported
        ]

    async def _flag(self, state: OrderLedgerState, reason: str, event: OrderEvent):
        """Flag the order for operator review, commit the flag, and raise."""
        state.flagged = True
        state.flag_reason = reason
        state.flagged_at = utcnow()
        await log_event(
            self.db,
            action=AuditAction.ORDER_FLAGGED,
            target_type="order",
            target_ref=event.order_id,
            metadata={"event_type": event.event_type.value, "reason": reason},
        )
        with translate_store_errors("flag_order"):
            await self.db.commit()

        logger.error(
            "Order flagged for reconciliation",
            extra={"order_id": event.order_id, "event_type": event.event_type.value, "reason": reason}
        )
        raise ReconciliationConflict(event.order_id, f"Order {event.order_id} flagged: {reason}")

    async def list_flagged(self) -> List[OrderLedgerState]:
        with translate_store_errors("list_flagged"):
            result = await self.db.execute(
                select(OrderLedgerState)
                .where(OrderLedgerState.flagged.is_(True))
                .order_by(OrderLedgerState.flagged_at)
            )
            return list(result.scalars().all())

    async def resolve_flag(self, order_id: str, actor_ref: str, note: str) -> OrderLedgerState:
        """Operator clears a flag after reviewing the order; automated processing resumes."""
        with translate_store_errors("resolve_flag"):
            result = await self.db.execute(
                select(OrderLedgerState)
                .where(OrderLedgerState.order_id == order_id)
                .with_for_update()
            )
            state = result.scalar_one_or_none()
            if state is None:
                raise ResourceNotFoundError("Order", order_id)
            if not state.flagged:
                return state

            previous_reason = state.flag_reason
            state.flagged = False
            state.flag_reason = None
            state.flagged_at = None
            await log_event(
                self.db,
                action=AuditAction.ORDER_FLAG_RESOLVED,
                actor_ref=actor_ref,
                target_type="order",
                target_ref=order_id,
                metadata={"previous_reason": previous_reason, "note": note},
            )
            await self.db.commit()

        logger.info("Order flag resolved", extra={"order_id": order_id, "actor": actor_ref})
        return state
