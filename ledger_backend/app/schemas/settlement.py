"""
Settlement Schemas.
"""

from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from typing import Any, Dict, List, Optional
from ledger_backend.app.core.timeutils import to_utc
from ledger_backend.app.models.ledger_enums import SettlementStatus, PayoutStatus, PayoutConfirmationStatus
from ledger_backend.app.schemas.ledger import BatchResultResponse


class PeriodRequest(BaseModel):
    """Explicit period, or the last closed period when both bounds are omitted."""
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @model_validator(mode="after")
    def check_bounds(self):
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("period_start and period_end must be given together")
        if self.period_start is not None and to_utc(self.period_start) >= to_utc(self.period_end):
            raise ValueError("period_end must be after period_start")
        return self


class SettlementRunRequest(PeriodRequest):
    account_id: int = Field(..., gt=0)


class SettlementResponse(BaseModel):
    id: int
    account_id: int
    period_start: datetime
    period_end: datetime
    total_amount: int
    status: SettlementStatus
    payout_status: PayoutStatus
    payout_attempts: int
    payout_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SettlementRunResponse(BaseModel):
    """Outcome of one run; settlement is null when there was nothing to settle."""
    account_id: int
    created: bool
    settlement: Optional[SettlementResponse] = None
    batch: Optional[BatchResultResponse] = None
    transaction_count: int = 0


class SettlementFailure(BaseModel):
    account_id: int
    error_code: str
    message: str


class PeriodRunResponse(BaseModel):
    period_start: datetime
    period_end: datetime
    settled: List[SettlementResponse]
    skipped_account_ids: List[int]
    failures: List[SettlementFailure]


class PayoutConfirmation(BaseModel):
    """Asynchronous confirmation sent by the payout rail."""
    settlement_id: int = Field(..., gt=0)
    status: PayoutConfirmationStatus
    reference: Optional[str] = Field(None, max_length=100)


class AuditEntryResponse(BaseModel):
    id: int
    timestamp: datetime
    actor_ref: Optional[str] = None
    action: str
    meta_data: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True
