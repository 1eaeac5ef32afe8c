"""
Audit Log Database Model.

Tracks financial operations and operator actions for audits.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from ledger_backend.app.core.timeutils import utcnow
from ledger_backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model for tracking ledger events and operator actions.

    Events logged:
    - ORDER_FLAGGED / ORDER_FLAG_RESOLVED
    - BATCH_REJECTED (validation failures)
    - SETTLEMENT_CREATED / SETTLEMENT_PAID
    - PAYOUT_REQUESTED / PAYOUT_FAILED / PAYOUT_RETRIED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_ref = Column(String(100), index=True, nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    target_type = Column(String(50), nullable=True)
    target_ref = Column(String(100), index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_ref}, target={self.target_ref})>"
