"""
Admin Settlement API Endpoints.

Handles settlement runs and the manual resolution of stuck payouts.
"""

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.db.session import get_db
from ledger_backend.app.models.ledger_enums import SettlementStatus, PayoutStatus
from ledger_backend.app.schemas.ledger import BatchResultResponse
from ledger_backend.app.schemas.settlement import (
    PeriodRequest, SettlementRunRequest, SettlementResponse, SettlementRunResponse,
    PeriodRunResponse, SettlementFailure, AuditEntryResponse
)
from ledger_backend.app.core.guards import require_role, STAFF_ROLES
from ledger_backend.app.core.reliability import retry_with_backoff
from ledger_backend.app.domain.ledger.settlement_engine import SettlementBatchEngine, SettlementPeriod
from ledger_backend.app.services.payout_rail import PayoutRail, get_payout_rail
from ledger_backend.app.services.audit import get_audit_trail

router = APIRouter(prefix="/admin/settlements", tags=["Admin - Settlements"])


def resolve_period(request: PeriodRequest) -> SettlementPeriod:
    """Requested period, or the last closed one."""
    if request.period_start is None:
        return SettlementPeriod.last_closed()
    return SettlementPeriod(start=request.period_start, end=request.period_end)


@router.post("/run", response_model=SettlementRunResponse)
async def run_settlement(
    request: SettlementRunRequest,
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    """
    Settle one account for one period.

    Re-running a settled period returns the same settlement with created=false.
    """
    period = resolve_period(request)
    engine = SettlementBatchEngine(db, payout_rail)
    result = await retry_with_backoff(lambda: engine.run_settlement(request.account_id, period))

    if result is None:
        return SettlementRunResponse(account_id=request.account_id, created=False)

    return SettlementRunResponse(
        account_id=request.account_id,
        created=result.created,
        settlement=SettlementResponse.model_validate(result.settlement),
        batch=BatchResultResponse(**asdict(result.batch)) if result.batch else None,
        transaction_count=result.transaction_count,
    )


@router.post("/run-period", response_model=PeriodRunResponse)
async def run_period(
    request: PeriodRequest,
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    """Settle every account with outstanding postings for the period."""
    period = resolve_period(request)
    outcome = await SettlementBatchEngine(db, payout_rail).run_period(period)

    return PeriodRunResponse(
        period_start=period.start,
        period_end=period.end,
        settled=[SettlementResponse.model_validate(r.settlement) for r in outcome.settled],
        skipped_account_ids=outcome.skipped_account_ids,
        failures=[SettlementFailure(**failure) for failure in outcome.failures],
    )


@router.get("", response_model=List[SettlementResponse])
async def list_settlements(
    status: Optional[SettlementStatus] = Query(None),
    payout_status: Optional[PayoutStatus] = Query(None, description="FAILURE lists payouts needing an operator"),
    account_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    engine = SettlementBatchEngine(db, payout_rail)
    return await engine.list_settlements(
        status=status, payout_status=payout_status, account_id=account_id, limit=limit
    )


@router.get("/{settlement_id}", response_model=SettlementResponse)
async def get_settlement(
    settlement_id: int = Path(..., gt=0),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    return await SettlementBatchEngine(db, payout_rail).get_settlement(settlement_id)


@router.post("/{settlement_id}/retry-payout", response_model=SettlementResponse)
async def retry_payout(
    settlement_id: int = Path(..., gt=0),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    """
    Request the transfer again after a failure.

    409 ERR_SETTLEMENT_PENDING while the previous request awaits confirmation.
    """
    engine = SettlementBatchEngine(db, payout_rail)
    return await engine.retry_payout(settlement_id, actor_ref=current_user["sub"])


@router.get("/{settlement_id}/audit-trail", response_model=List[AuditEntryResponse])
async def settlement_audit_trail(
    settlement_id: int = Path(..., gt=0),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    """Payout history of one settlement, most recent first."""
    await SettlementBatchEngine(db, payout_rail).get_settlement(settlement_id)
    return await get_audit_trail(db, target_type="settlement", target_ref=settlement_id, limit=limit)
