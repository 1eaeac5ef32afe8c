"""
Posting Batch database model.

The unit of atomicity: every posting belongs to exactly one batch.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
from ledger_backend.app.db.session import Base
from ledger_backend.app.models.ledger_enums import BatchEventType


class PostingBatch(Base):
    """
    Posting Batch model.

    The unique idempotency key makes a re-delivered business event collapse
    into the batch that was already committed.
    """
    __tablename__ = "posting_batches"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    idempotency_key = Column(String(200), nullable=False, unique=True)
    event_type = Column(Enum(BatchEventType, name="batch_event_type"), nullable=False)

    # Business references
    order_id = Column(String(64), nullable=True, index=True)
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<PostingBatch(id={self.id}, key='{self.idempotency_key}')>"
