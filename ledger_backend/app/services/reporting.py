"""
Reporting Service.

Read views of the ledger for operational UIs and spreadsheet export.
Focused on READ-ONLY operations.
"""

import csv
import io
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from ledger_backend.app.core.config import settings
from ledger_backend.app.core.timeutils import to_utc
from ledger_backend.app.domain.ledger.balance_aggregator import BalanceAggregator
from ledger_backend.app.domain.ledger.ledger_store import translate_store_errors
from ledger_backend.app.models.account import Account
from ledger_backend.app.models.ledger_enums import AccountType, TransactionType
from ledger_backend.app.models.ledger_transaction import LedgerTransaction
from ledger_backend.app.schemas.ledger import BalanceStatsResponse, TransactionPage, TransactionRow

# Stable export layout, one row per posting
EXPORT_COLUMNS = ["date", "type", "account", "amount", "related_order", "description"]


@dataclass(frozen=True)
class TransactionFilter:
    type: Optional[TransactionType] = None
    account_type: Optional[AccountType] = None
    account_id: Optional[int] = None
    order_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None  # Inclusive


def format_amount(amount: int) -> str:
    """Minor units to a major-unit string, e.g. 17000 -> "170.00"."""
    exponent = settings.currency_exponent
    return f"{Decimal(amount).scaleb(-exponent):.{exponent}f}"


def account_label(account: Account) -> str:
    return f"{account.account_type.value}:{account.owner_ref}"


class ReportingService:

    @staticmethod
    def _apply_filter(query, filters: TransactionFilter):
        if filters.type:
            query = query.where(LedgerTransaction.type == filters.type)
        if filters.account_type:
            query = query.where(Account.account_type == filters.account_type)
        if filters.account_id:
            query = query.where(LedgerTransaction.account_id == filters.account_id)
        if filters.order_id:
            query = query.where(LedgerTransaction.order_id == filters.order_id)
        if filters.start_date:
            query = query.where(LedgerTransaction.created_at >= to_utc(filters.start_date))
        if filters.end_date:
            query = query.where(LedgerTransaction.created_at <= to_utc(filters.end_date))
        return query

    @staticmethod
    def _to_row(tx: LedgerTransaction) -> TransactionRow:
        return TransactionRow(
            id=tx.id,
            created_at=tx.created_at,
            type=tx.type,
            amount=tx.amount,
            account_id=tx.account_id,
            account_type=tx.account.account_type,
            account_owner_ref=tx.account.owner_ref,
            order_id=tx.order_id,
            settlement_id=tx.settlement_id,
            description=tx.description,
        )

    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        filters: TransactionFilter,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> TransactionPage:
        """Filtered postings, newest first."""
        page_size = min(page_size or settings.default_page_size, settings.max_page_size)
        page = max(page, 1)

        base = select(LedgerTransaction).join(Account, Account.id == LedgerTransaction.account_id)
        base = ReportingService._apply_filter(base, filters)

        count_query = select(func.count()).select_from(base.order_by(None).subquery())
        rows_query = (
            base.order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )

        with translate_store_errors("list_transactions"):
            total = (await db.execute(count_query)).scalar() or 0
            result = await db.execute(rows_query)
            transactions = result.unique().scalars().all()

        return TransactionPage(
            rows=[ReportingService._to_row(tx) for tx in transactions],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    @staticmethod
    async def export_rows(db: AsyncSession, filters: TransactionFilter) -> List[Dict[str, Any]]:
        """Flat export rows, oldest first so a spreadsheet reads chronologically."""
        query = select(LedgerTransaction).join(Account, Account.id == LedgerTransaction.account_id)
        query = ReportingService._apply_filter(query, filters)
        query = query.order_by(LedgerTransaction.created_at, LedgerTransaction.id)

        with translate_store_errors("export_transactions"):
            result = await db.execute(query)
            transactions = result.unique().scalars().all()

        return [
            {
                "date": to_utc(tx.created_at).isoformat(),
                "type": tx.type.value,
                "account": account_label(tx.account),
                "amount": format_amount(tx.amount),
                "related_order": tx.order_id or "",
                "description": tx.description or "",
            }
            for tx in transactions
        ]

    @staticmethod
    async def export_csv(db: AsyncSession, filters: TransactionFilter) -> str:
        rows = await ReportingService.export_rows(db, filters)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue()

    @staticmethod
    async def get_balance_stats(db: AsyncSession) -> BalanceStatsResponse:
        """Admin dashboard totals per account type."""
        totals = await BalanceAggregator(db).totals_by_account_type()
        return BalanceStatsResponse(
            restaurants=totals[AccountType.RESTAURANT],
            delivery_agents=totals[AccountType.DELIVERY_AGENT],
            clients=totals[AccountType.CLIENT],
            platform=totals[AccountType.PLATFORM],
        )
