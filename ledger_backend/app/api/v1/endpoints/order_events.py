"""
Order Event Webhook.

Receives order lifecycle events from the order service (at least once).
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.db.session import get_db
from ledger_backend.app.models.enums import UserRole
from ledger_backend.app.schemas.ledger import OrderEvent, OrderEventResponse, BatchResultResponse
from ledger_backend.app.core.guards import require_role
from ledger_backend.app.core.reliability import retry_with_backoff
from ledger_backend.app.domain.ledger.order_settlement import OrderSettlementOrchestrator

router = APIRouter(prefix="/ledger", tags=["Ledger - Webhooks"])


@router.post("/order-events", response_model=OrderEventResponse)
async def receive_order_event(
    event: OrderEvent,
    current_user: dict = Depends(require_role([UserRole.SERVICE])),
    db: AsyncSession = Depends(get_db)
):
    """
    Post the ledger effects of an order event.

    Duplicates answer 200 with duplicate=true and the original batch.
    Transient store failures are retried here before surfacing as 503.
    """
    orchestrator = OrderSettlementOrchestrator(db)
    outcome = await retry_with_backoff(lambda: orchestrator.handle_event(event))

    return OrderEventResponse(
        order_id=outcome.order_id,
        event_type=outcome.event_type,
        status=outcome.status,
        duplicate=outcome.duplicate,
        batch=BatchResultResponse(**asdict(outcome.batch)) if outcome.batch else None,
    )
