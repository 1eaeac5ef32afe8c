"""
Admin Order API Endpoints.

Orders flagged by reconciliation are excluded from automated processing
until an operator resolves them here.
"""

from typing import List

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.db.session import get_db
from ledger_backend.app.schemas.ledger import FlaggedOrderResponse, ResolveFlagRequest
from ledger_backend.app.core.guards import require_role, STAFF_ROLES
from ledger_backend.app.domain.ledger.order_settlement import OrderSettlementOrchestrator

router = APIRouter(prefix="/admin/orders", tags=["Admin - Orders"])


@router.get("/flagged", response_model=List[FlaggedOrderResponse])
async def list_flagged_orders(
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    return await OrderSettlementOrchestrator(db).list_flagged()


@router.post("/{order_id}/resolve-flag", response_model=FlaggedOrderResponse)
async def resolve_order_flag(
    body: ResolveFlagRequest,
    order_id: str = Path(..., min_length=1, max_length=64),
    current_user: dict = Depends(require_role(STAFF_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """
    Clear the reconciliation flag after review.

    The orchestrator then accepts events for the order again; amounts that
    still contradict the recorded ones flag it again.
    """
    return await OrderSettlementOrchestrator(db).resolve_flag(
        order_id, actor_ref=current_user["sub"], note=body.note
    )
