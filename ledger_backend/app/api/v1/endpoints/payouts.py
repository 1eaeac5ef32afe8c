"""
Payout Rail Webhook.

Receives asynchronous transfer confirmations for settlements.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_backend.app.db.session import get_db
from ledger_backend.app.models.enums import UserRole
from ledger_backend.app.schemas.settlement import PayoutConfirmation, SettlementResponse
from ledger_backend.app.core.guards import require_role
from ledger_backend.app.core.reliability import retry_with_backoff
from ledger_backend.app.domain.ledger.settlement_engine import SettlementBatchEngine
from ledger_backend.app.services.payout_rail import PayoutRail, get_payout_rail

router = APIRouter(prefix="/ledger/payouts", tags=["Ledger - Webhooks"])


@router.post("/confirmations", response_model=SettlementResponse)
async def confirm_payout(
    confirmation: PayoutConfirmation,
    current_user: dict = Depends(require_role([UserRole.SERVICE])),
    db: AsyncSession = Depends(get_db),
    payout_rail: PayoutRail = Depends(get_payout_rail)
):
    """Only a success confirmation marks a settlement paid."""
    engine = SettlementBatchEngine(db, payout_rail)
    return await retry_with_backoff(
        lambda: engine.confirm_payout(
            confirmation.settlement_id,
            confirmation.status,
            reference=confirmation.reference,
        )
    )
