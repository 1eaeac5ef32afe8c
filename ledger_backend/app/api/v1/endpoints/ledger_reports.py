"""
Ledger Reporting API Endpoints.

Read views for operational UIs: transaction listing, CSV export,
account balances and dashboard totals.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Path, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.db.session import get_db
from ledger_backend.app.models.enums import UserRole
from ledger_backend.app.models.ledger_enums import AccountType, TransactionType
from ledger_backend.app.schemas.ledger import BalanceResponse, BalanceStatsResponse, TransactionPage
from ledger_backend.app.core.config import settings
from ledger_backend.app.core.dependencies import get_current_user
from ledger_backend.app.core.guards import require_role, OwnershipGuard, STAFF_ROLES
from ledger_backend.app.domain.ledger.balance_aggregator import BalanceAggregator
from ledger_backend.app.domain.ledger.ledger_store import LedgerStore
from ledger_backend.app.services.reporting import ReportingService, TransactionFilter

router = APIRouter(prefix="/ledger", tags=["Ledger - Reporting"])

ownership_guard = OwnershipGuard()


def transaction_filter(
    type: Optional[TransactionType] = Query(None, description="Posting type"),
    account_type: Optional[AccountType] = Query(None),
    account_id: Optional[int] = Query(None, gt=0),
    order_id: Optional[str] = Query(None, max_length=64),
    start_date: Optional[datetime] = Query(None, description="Inclusive lower bound"),
    end_date: Optional[datetime] = Query(None, description="Inclusive upper bound"),
) -> TransactionFilter:
    return TransactionFilter(
        type=type,
        account_type=account_type,
        account_id=account_id,
        order_id=order_id,
        start_date=start_date,
        end_date=end_date,
    )


@router.get("/transactions", response_model=TransactionPage)
async def list_transactions(
    filters: TransactionFilter = Depends(transaction_filter),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """Filtered postings, newest first."""
    return await ReportingService.list_transactions(db, filters, page=page, page_size=page_size)


@router.get("/transactions/export")
async def export_transactions(
    filters: TransactionFilter = Depends(transaction_filter),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """
    CSV export of the filtered postings.

    Columns: date, type, account, amount, related_order, description.
    Amounts are in major units.
    """
    content = await ReportingService.export_csv(db, filters)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="ledger_transactions.csv"'},
    )


@router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
async def get_account_balance(
    account_id: int = Path(..., gt=0),
    as_of: Optional[datetime] = Query(None, description="Defaults to now"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Balance of one account.

    Participants may only read their own account.
    """
    account = await LedgerStore(db).get_account(account_id)
    ownership_guard.enforce(account, current_user)

    balance = await BalanceAggregator(db).get_balance(account_id, as_of=as_of)
    return BalanceResponse(
        account_id=balance.account_id,
        account_type=balance.account_type,
        owner_ref=balance.owner_ref,
        as_of=balance.as_of,
        available=balance.available,
        payable_pending=balance.payable_pending,
        receivable_pending=balance.receivable_pending,
    )


@router.get("/balance-stats", response_model=BalanceStatsResponse)
async def get_balance_stats(
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """Totals per account type for the admin dashboard."""
    return await ReportingService.get_balance_stats(db)
