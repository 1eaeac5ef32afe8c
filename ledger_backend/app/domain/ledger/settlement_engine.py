"""
Settlement Batch Engine (Domain Logic).

Groups the unsettled payable postings of one account into one settlement per
period, posts the payout batch and drives the payout rail.

Flow:
1. Lock (account, period) through the settlement_locks unique index
2. Return the existing settlement for that exact period, if any
3. Attach every unsettled settleable posting created before the period end
4. Append SETTLEMENT_PAYMENT / SETTLEMENT_RECEPTION and commit
5. Request the transfer; only a success confirmation marks the settlement paid
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, exists, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.core.config import settings
from ledger_backend.app.core.exceptions import (
    AppException,
    ResourceNotFoundError,
    SettlementAlreadyPaid,
    SettlementPending,
    StoreUnavailable,
    ValidationFailed,
)
from ledger_backend.app.core.timeutils import to_utc, utcnow
from ledger_backend.app.domain.ledger.balance_aggregator import effective_type_column
from ledger_backend.app.domain.ledger.ledger_store import BatchResult, LedgerStore, translate_store_errors
from ledger_backend.app.domain.ledger.posting_validator import PostingDraft
from ledger_backend.app.models.account import Account
from ledger_backend.app.models.ledger_enums import (
    AccountType,
    BatchEventType,
    PayoutConfirmationStatus,
    PayoutStatus,
    SETTLEABLE_TYPES_BY_ACCOUNT,
    SettlementStatus,
    TransactionType,
)
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.models.settlement import Settlement, SettlementItem
from ledger_backend.app.models.settlement_lock import SettlementLock
from ledger_backend.app.services.audit import log_event, AuditAction, SYSTEM_ACTOR
from ledger_backend.app.services.payout_rail import PayoutRail, PayoutRequest, PayoutRequestError

logger = logging.getLogger("ledger.settlements")

RETRYABLE_PAYOUT_STATUSES = {
    PayoutStatus.NOT_REQUESTED,
    PayoutStatus.REQUEST_ERROR,
    PayoutStatus.FAILURE,
}


@dataclass(frozen=True)
class SettlementPeriod:
    """Half-open settlement window [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        if self.start >= self.end:
            raise ValidationFailed(
                "Settlement period must end after it starts",
                details={"period_start": self.start.isoformat(), "period_end": self.end.isoformat()},
            )

    @classmethod
    def last_closed(cls, now: Optional[datetime] = None, days: Optional[int] = None) -> "SettlementPeriod":
        """
        The most recent period that has fully ended.

        Periods are aligned on day ordinals so that consecutive runs tile the
        calendar; with 7-day periods every period starts on a Monday.
        """
        days = days or settings.settlement_period_days
        today = to_utc(now or utcnow()).date()
        ordinal = today.toordinal()
        end_day = date.fromordinal(ordinal - (ordinal - 1) % days)
        end = datetime.combine(end_day, time.min, tzinfo=timezone.utc)
        return cls(start=end - timedelta(days=days), end=end)

    @property
    def batch_key_part(self) -> str:
        return f"{self.start.isoformat()}:{self.end.isoformat()}"


@dataclass
class SettlementRunResult:
    settlement: Settlement
    created: bool
    batch: Optional[BatchResult] = None
    transaction_count: int = 0


@dataclass
class PeriodRunResult:
    period: SettlementPeriod
    settled: List[SettlementRunResult] = field(default_factory=list)
    skipped_account_ids: List[int] = field(default_factory=list)
    failures: List[dict] = field(default_factory=list)


def settlement_batch_key(account_id: int, period: SettlementPeriod) -> str:
    return f"settlement:{account_id}:{period.batch_key_part}"


def already_settled():
    return exists().where(SettlementItem.transaction_id == LedgerTransaction.id)


class SettlementBatchEngine:

    def __init__(self, db: AsyncSession, payout_rail: PayoutRail):
        self.db = db
        self.store = LedgerStore(db)
        self.payout_rail = payout_rail

    async def run_settlement(self, account_id: int, period: SettlementPeriod) -> Optional[SettlementRunResult]:
        """
        Settle one account for one period.

        Returns None when the account has nothing to settle. Re-running an
        already settled period returns the same settlement with created=False.

        Raises:
            ValidationFailed: platform account, or an invalid payout batch
            StoreUnavailable: transient failure or a concurrent run, safe to retry
        """
        platform = await self.store.get_platform_account()
        account = await self.store.get_account(account_id)
        if account.account_type == AccountType.PLATFORM:
            raise ValidationFailed(
                "The platform account is never settled",
                details={"account_id": account_id},
            )

        try:
            result = await self._settle_locked(account, platform, period)
        except (StoreUnavailable, ValidationFailed):
            await self.db.rollback()
            raise

        if result is None:
            logger.info(
                "Nothing to settle",
                extra={"account_id": account_id, "period_start": period.start.isoformat()}
            )
            return None

        if result.created and result.settlement.status == SettlementStatus.OPEN:
            await self._request_payout(result.settlement, account)
        return result

    async def _settle_locked(
        self,
        account: Account,
        platform: Account,
        period: SettlementPeriod,
    ) -> Optional[SettlementRunResult]:
        lock = await self._acquire_lock(account.id, period)

        with translate_store_errors("run_settlement"):
            existing = await self._find_settlement(account.id, period)
            if existing is not None:
                await self.db.delete(lock)
                await self.db.commit()
                logger.info(
                    "Settlement already exists for period",
                    extra={"settlement_id": existing.id, "account_id": account.id}
                )
                return SettlementRunResult(settlement=existing, created=False)

            candidates = await self._select_unsettled(account, period)
            if not candidates:
                await self.db.delete(lock)
                await self.db.commit()
                return None

            total = sum(amount for _, amount in candidates)
            now = utcnow()
            settlement = Settlement(
                account_id=account.id,
                period_start=period.start,
                period_end=period.end,
                total_amount=total,
                status=SettlementStatus.OPEN,
                payout_status=PayoutStatus.NOT_REQUESTED,
                payout_attempts=0,
            )
            if total == 0:
                # Offsetting postings (delivery then cancellation): nothing to transfer
                settlement.status = SettlementStatus.PAID
                settlement.paid_at = now
            self.db.add(settlement)

            try:
                await self.db.flush()  # To get settlement.id
                self.db.add_all([
                    SettlementItem(settlement_id=settlement.id, transaction_id=transaction_id)
                    for transaction_id, _ in candidates
                ])
                await self.db.flush()
            except IntegrityError as exc:
                # Another run attached some of these postings first
                await self.db.rollback()
                raise StoreUnavailable(
                    f"Postings of account {account.id} are being settled concurrently",
                    details={"account_id": account.id},
                ) from exc

            batch = None
            if total != 0:
                batch = await self.store.append_batch(
                    self._payout_postings(settlement, account, platform, period, now),
                    BatchEventType.SETTLEMENT,
                    settlement_id=settlement.id,
                )
                if batch.replayed:
                    raise StoreUnavailable(
                        f"Settlement batch for account {account.id} was written concurrently",
                        details={"account_id": account.id},
                    )

            await log_event(
                self.db,
                action=AuditAction.SETTLEMENT_CREATED if total != 0 else AuditAction.SETTLEMENT_PAID,
                target_type="settlement",
                target_ref=settlement.id,
                metadata={
                    "account_id": account.id,
                    "period_start": period.start.isoformat(),
                    "period_end": period.end.isoformat(),
                    "total_amount": total,
                    "postings": len(candidates),
                },
            )
            await self.db.delete(lock)
            await self.db.commit()

        logger.info(
            "Settlement created",
            extra={
                "settlement_id": settlement.id,
                "account_id": account.id,
                "total_amount": total,
                "postings": len(candidates),
                "status": settlement.status.value,
            }
        )
        return SettlementRunResult(
            settlement=settlement,
            created=True,
            batch=batch,
            transaction_count=len(candidates),
        )

    async def _acquire_lock(self, account_id: int, period: SettlementPeriod) -> SettlementLock:
        """Single writer per (account, period); held until the run commits."""
        lock = SettlementLock(account_id=account_id, period_start=period.start, period_end=period.end)
        self.db.add(lock)
        try:
            with translate_store_errors("acquire_settlement_lock"):
                await self.db.flush()  # Will raise IntegrityError if another run holds it
        except IntegrityError as exc:
            await self.db.rollback()
            raise StoreUnavailable(
                f"Settlement of account {account_id} for this period is already running",
                details={"account_id": account_id},
            ) from exc
        return lock

    async def _find_settlement(self, account_id: int, period: SettlementPeriod) -> Optional[Settlement]:
        result = await self.db.execute(
            select(Settlement).where(
                Settlement.account_id == account_id,
                Settlement.period_start == period.start,
                Settlement.period_end == period.end,
            )
        )
        return result.scalar_one_or_none()

    async def _select_unsettled(self, account: Account, period: SettlementPeriod) -> List[Tuple[int, int]]:
        """Unsettled settleable postings before the period end, earlier periods included."""
        settleable = SETTLEABLE_TYPES_BY_ACCOUNT[account.account_type]
        result = await self.db.execute(
            select(LedgerTransaction.id, LedgerTransaction.amount)
            .where(
                LedgerTransaction.account_id == account.id,
                LedgerTransaction.created_at < period.end,
                effective_type_column().in_(list(settleable)),
                ~already_settled(),
            )
            .order_by(LedgerTransaction.created_at, LedgerTransaction.id)
        )
        return [(row[0], int(row[1])) for row in result.all()]

    @staticmethod
    def _payout_postings(
        settlement: Settlement,
        account: Account,
        platform: Account,
        period: SettlementPeriod,
        at: datetime,
    ) -> List[PostingDraft]:
        key = settlement_batch_key(account.id, period)
        description = f"Settlement {settlement.id} for {period.start.date()} - {period.end.date()}"
        return [
            PostingDraft(
                type=TransactionType.SETTLEMENT_PAYMENT,
                account_id=account.id,
                amount=-settlement.total_amount,
                idempotency_key=key,
                created_at=at,
                settlement_id=settlement.id,
                description=description,
            ),
            PostingDraft(
                type=TransactionType.SETTLEMENT_RECEPTION,
                account_id=platform.id,
                amount=settlement.total_amount,
                idempotency_key=key,
                created_at=at,
                settlement_id=settlement.id,
                description=description,
            ),
        ]

    async def _lock_settlement(self, settlement_id: int) -> Settlement:
        result = await self.db.execute(
            select(Settlement)
            .where(Settlement.id == settlement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        settlement = result.scalar_one_or_none()
        if settlement is None:
            raise ResourceNotFoundError("Settlement", settlement_id)
        return settlement

    async def _request_payout(
        self,
        settlement: Settlement,
        account: Account,
        actor_ref: str = SYSTEM_ACTOR,
    ) -> Settlement:
        """
        Mark the settlement REQUESTED, commit, then call the rail.

        The status is committed first so that a confirmation arriving before
        the call returns is never overwritten.
        """
        settlement.payout_status = PayoutStatus.REQUESTED
        settlement.payout_attempts = (settlement.payout_attempts or 0) + 1
        request = PayoutRequest(
            settlement_id=settlement.id,
            attempt=settlement.payout_attempts,
            account_id=account.id,
            account_type=account.account_type,
            owner_ref=account.owner_ref,
            amount=settlement.total_amount,
        )
        await log_event(
            self.db,
            action=AuditAction.PAYOUT_REQUESTED,
            actor_ref=actor_ref,
            target_type="settlement",
            target_ref=settlement.id,
            metadata={"attempt": request.attempt, "amount": request.amount, "direction": request.direction},
        )
        with translate_store_errors("request_payout"):
            await self.db.commit()

        try:
            reference = await self.payout_rail.request_payout(request)
        except PayoutRequestError as exc:
            return await self._record_request_outcome(request, error=str(exc))
        return await self._record_request_outcome(request, reference=reference)

    async def _record_request_outcome(
        self,
        request: PayoutRequest,
        reference: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Settlement:
        with translate_store_errors("record_payout_request"):
            settlement = await self._lock_settlement(request.settlement_id)
            current = (
                settlement.status == SettlementStatus.OPEN
                and settlement.payout_status == PayoutStatus.REQUESTED
                and settlement.payout_attempts == request.attempt
            )
            if current and error is not None:
                settlement.payout_status = PayoutStatus.REQUEST_ERROR
                await log_event(
                    self.db,
                    action=AuditAction.PAYOUT_REQUEST_ERROR,
                    target_type="settlement",
                    target_ref=settlement.id,
                    metadata={"attempt": request.attempt, "error": error},
                )
                logger.error(
                    "Payout request failed, settlement stays open",
                    extra={"settlement_id": settlement.id, "attempt": request.attempt, "error": error}
                )
            elif reference and settlement.payout_reference is None:
                settlement.payout_reference = reference
            await self.db.commit()
        return settlement

    async def confirm_payout(
        self,
        settlement_id: int,
        status: PayoutConfirmationStatus,
        reference: Optional[str] = None,
    ) -> Settlement:
        """
        Apply a payout rail confirmation.

        Success marks the settlement paid (repeated success is a no-op).
        Failure keeps it open with payout_status FAILURE for operators.

        Raises:
            SettlementAlreadyPaid: a failure confirmation for a paid settlement
        """
        with translate_store_errors("confirm_payout"):
            settlement = await self._lock_settlement(settlement_id)

            if status == PayoutConfirmationStatus.SUCCESS:
                if settlement.status == SettlementStatus.PAID:
                    await self.db.commit()
                    logger.info("Duplicate payout confirmation ignored", extra={"settlement_id": settlement_id})
                    return settlement

                settlement.status = SettlementStatus.PAID
                settlement.payout_status = PayoutStatus.SUCCESS
                settlement.paid_at = utcnow()
                if reference:
                    settlement.payout_reference = reference
                await log_event(
                    self.db,
                    action=AuditAction.SETTLEMENT_PAID,
                    target_type="settlement",
                    target_ref=settlement_id,
                    metadata={"reference": reference, "total_amount": settlement.total_amount},
                )
                await self.db.commit()
                logger.info(
                    "Settlement paid",
                    extra={"settlement_id": settlement_id, "reference": reference}
                )
                return settlement

            if settlement.status == SettlementStatus.PAID:
                await self.db.commit()
                logger.error(
                    "Payout failure reported for a paid settlement",
                    extra={"settlement_id": settlement_id, "reference": reference}
                )
                raise SettlementAlreadyPaid(settlement_id)

            settlement.payout_status = PayoutStatus.FAILURE
            if reference:
                settlement.payout_reference = reference
            await log_event(
                self.db,
                action=AuditAction.PAYOUT_FAILED,
                target_type="settlement",
                target_ref=settlement_id,
                metadata={"reference": reference, "attempt": settlement.payout_attempts},
            )
            await self.db.commit()

        logger.error(
            "Payout failed, settlement left open for operators",
            extra={"settlement_id": settlement_id, "reference": reference}
        )
        return settlement

    async def retry_payout(self, settlement_id: int, actor_ref: str = SYSTEM_ACTOR) -> Settlement:
        """
        Operator re-request of a payout that failed or was never accepted.

        Raises:
            SettlementAlreadyPaid: the settlement is paid
            SettlementPending: the current request still awaits its confirmation
        """
        with translate_store_errors("retry_payout"):
            settlement = await self._lock_settlement(settlement_id)
            # Rejections commit the read only: releases the row lock, keeps caller objects loaded
            if settlement.status == SettlementStatus.PAID:
                await self.db.commit()
                raise SettlementAlreadyPaid(settlement_id)
            if settlement.payout_status not in RETRYABLE_PAYOUT_STATUSES:
                await self.db.commit()
                raise SettlementPending(settlement_id)

            account = await self.store.get_account(settlement.account_id)
            await log_event(
                self.db,
                action=AuditAction.PAYOUT_RETRIED,
                actor_ref=actor_ref,
                target_type="settlement",
                target_ref=settlement_id,
                metadata={"previous_status": settlement.payout_status.value, "attempts": settlement.payout_attempts},
            )

        logger.info("Payout retry requested", extra={"settlement_id": settlement_id, "actor": actor_ref})
        return await self._request_payout(settlement, account, actor_ref=actor_ref)

    async def accounts_to_settle(self, period: SettlementPeriod) -> List[int]:
        """Accounts with unsettled settleable postings created before the period end."""
        settleable = or_(*[
            and_(Account.account_type == account_type, effective_type_column().in_(list(types)))
            for account_type, types in SETTLEABLE_TYPES_BY_ACCOUNT.items()
        ])
        with translate_store_errors("accounts_to_settle"):
            result = await self.db.execute(
                select(LedgerTransaction.account_id)
                .join(Account, Account.id == LedgerTransaction.account_id)
                .where(
                    settleable,
                    LedgerTransaction.created_at < period.end,
                    ~already_settled(),
                )
                .distinct()
                .order_by(LedgerTransaction.account_id)
            )
            return list(result.scalars().all())

    async def run_period(self, period: SettlementPeriod) -> PeriodRunResult:
        """Settle every account with outstanding postings; one failure never stops the run."""
        outcome = PeriodRunResult(period=period)
        for account_id in await self.accounts_to_settle(period):
            try:
                result = await self.run_settlement(account_id, period)
            except AppException as exc:
                logger.error(
                    "Settlement run failed for account",
                    extra={"account_id": account_id, "error_code": exc.error_code, "reason": exc.message}
                )
                outcome.failures.append({
                    "account_id": account_id,
                    "error_code": exc.error_code,
                    "message": exc.message,
                })
                continue

            if result is None:
                outcome.skipped_account_ids.append(account_id)
            else:
                outcome.settled.append(result)

        logger.info(
            "Settlement period run finished",
            extra={
                "period_start": period.start.isoformat(),
                "period_end": period.end.isoformat(),
                "settled": len(outcome.settled),
                "skipped": len(outcome.skipped_account_ids),
                "failed": len(outcome.failures),
            }
        )
        return outcome

    async def get_settlement(self, settlement_id: int) -> Settlement:
        with translate_store_errors("get_settlement"):
            settlement = await self.db.get(Settlement, settlement_id)
        if settlement is None:
            raise ResourceNotFoundError("Settlement", settlement_id)
        return settlement

    async def list_settlements(
        self,
        status: Optional[SettlementStatus] = None,
        payout_status: Optional[PayoutStatus] = None,
        account_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Settlement]:
        query = select(Settlement)
        if status:
            query = query.where(Settlement.status == status)
        if payout_status:
            query = query.where(Settlement.payout_status == payout_status)
        if account_id:
            query = query.where(Settlement.account_id == account_id)
        query = query.order_by(Settlement.created_at.desc(), Settlement.id.desc()).limit(limit)

        with translate_store_errors("list_settlements"):
            result = await self.db.execute(query)
            return list(result.scalars().all())
