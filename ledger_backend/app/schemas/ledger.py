"""
Ledger Schemas.

Order events consumed from the order lifecycle service and read models
exposed to operational UIs. Amounts are integer minor units.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from ledger_backend.app.models.ledger_enums import (
    AccountType, TransactionType, OrderEventType, OrderLedgerStatus, PaymentMethod
)


class OrderEvent(BaseModel):
    """Order lifecycle event, delivered at least once."""
    order_id: str = Field(..., min_length=1, max_length=64)
    event_type: OrderEventType
    subtotal: int = Field(..., gt=0)
    delivery_fee: int = Field(0, ge=0)
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=1, decimal_places=6)
    payment_method: PaymentMethod
    payment_captured: bool = True
    restaurant_id: str = Field(..., min_length=1, max_length=64)
    delivery_agent_id: str = Field(..., min_length=1, max_length=64)
    client_id: str = Field(..., min_length=1, max_length=64)
    timestamp: datetime


class BatchResultResponse(BaseModel):
    batch_id: int
    idempotency_key: str
    transaction_ids: List[int]
    replayed: bool


class OrderEventResponse(BaseModel):
    order_id: str
    event_type: OrderEventType
    status: OrderLedgerStatus
    duplicate: bool
    batch: Optional[BatchResultResponse] = None


class BalanceResponse(BaseModel):
    """Balance of one account, derived from its postings."""
    account_id: int
    account_type: AccountType
    owner_ref: str
    as_of: datetime
    available: int
    payable_pending: int
    receivable_pending: int


class BalanceStatsResponse(BaseModel):
    """Platform-wide totals per account type (admin dashboard)."""
    restaurants: int
    delivery_agents: int
    clients: int
    platform: int


class TransactionRow(BaseModel):
    """Schema for displaying a posting."""
    id: int
    created_at: datetime
    type: TransactionType
    amount: int
    account_id: int
    account_type: AccountType
    account_owner_ref: str
    order_id: Optional[str]
    settlement_id: Optional[int]
    description: Optional[str]


class TransactionPage(BaseModel):
    rows: List[TransactionRow]
    total: int
    page: int
    page_size: int
    total_pages: int


class FlaggedOrderResponse(BaseModel):
    """Schema for orders excluded from automated processing."""
    order_id: str
    status: OrderLedgerStatus
    subtotal: int
    delivery_fee: int
    payment_method: PaymentMethod
    flag_reason: Optional[str]
    flagged_at: Optional[datetime]

    class Config:
        from_attributes = True


class ResolveFlagRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=500)
