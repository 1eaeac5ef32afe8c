"""
Balance Aggregator (Domain Logic).

Balances are never stored: every figure is an aggregate over the postings,
read with the (account_id, created_at) index.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, func, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.core.timeutils import to_utc, utcnow
from ledger_backend.app.domain.ledger.ledger_store import LedgerStore, translate_store_errors
from ledger_backend.app.models.account import Account
from ledger_backend.app.models.ledger_enums import (
    AccountType,
    PAYABLE_TYPES,
    RECEIVABLE_TYPES,
    SettlementStatus,
)
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.models.settlement import Settlement, SettlementItem


@dataclass(frozen=True)
class AccountBalance:
    account_id: int
    account_type: AccountType
    owner_ref: str
    as_of: datetime
    available: int
    payable_pending: int
    receivable_pending: int


def effective_type_column():
    """Reversals are classified by the type of the posting they negate."""
    return func.coalesce(LedgerTransaction.reversed_type, LedgerTransaction.type)


def paid_settlement_exists():
    """Correlated EXISTS: the posting belongs to a paid settlement."""
    return exists().where(
        and_(
            SettlementItem.transaction_id == LedgerTransaction.id,
            Settlement.id == SettlementItem.settlement_id,
            Settlement.status == SettlementStatus.PAID,
        )
    )


class BalanceAggregator:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = LedgerStore(db)

    async def get_balance(self, account_id: int, as_of: Optional[datetime] = None) -> AccountBalance:
        """
        Balance of an account as of a point in time (default: now).

        available is the replay of every posting with created_at <= as_of.
        payable_pending and receivable_pending only count postings of their
        class that no paid settlement references yet.
        """
        account = await self.store.get_account(account_id)
        as_of = utcnow() if as_of is None else to_utc(as_of)

        effective_type = effective_type_column()
        in_window = and_(
            LedgerTransaction.account_id == account_id,
            LedgerTransaction.created_at <= as_of,
        )
        unpaid = ~paid_settlement_exists()

        query = select(
            func.coalesce(func.sum(LedgerTransaction.amount), 0),
            func.coalesce(
                func.sum(LedgerTransaction.amount).filter(and_(effective_type.in_(list(PAYABLE_TYPES)), unpaid)), 0
            ),
            func.coalesce(
                func.sum(LedgerTransaction.amount).filter(and_(effective_type.in_(list(RECEIVABLE_TYPES)), unpaid)), 0
            ),
        ).where(in_window)

        with translate_store_errors("get_balance"):
            result = await self.db.execute(query)
            available, payable, receivable = result.one()

        if account.account_type == AccountType.PLATFORM:
            # The platform is the counterparty of every payable, never a payee
            payable, receivable = 0, 0

        return AccountBalance(
            account_id=account.id,
            account_type=account.account_type,
            owner_ref=account.owner_ref,
            as_of=as_of,
            available=int(available),
            payable_pending=int(payable),
            receivable_pending=int(receivable),
        )

    async def totals_by_account_type(self) -> Dict[AccountType, int]:
        """Platform-wide balance per account type; types with no postings are 0."""
        with translate_store_errors("totals_by_account_type"):
            result = await self.db.execute(
                select(Account.account_type, func.coalesce(func.sum(LedgerTransaction.amount), 0))
                .join(LedgerTransaction, LedgerTransaction.account_id == Account.id)
                .group_by(Account.account_type)
            )
            rows = result.all()

        totals = {account_type: 0 for account_type in AccountType}
        for account_type, total in rows:
            totals[account_type] = int(total)
        return totals
