"""
Order Ledger State database model.

Orchestrator state per order plus the amounts used for reconciliation.
"""

from sqlalchemy import Column, Integer, BigInteger, Numeric, String, Text, Boolean, DateTime, Enum
from ledger_backend.app.core.timeutils import utcnow
from ledger_backend.app.db.session import Base
from ledger_backend.app.models.ledger_enums import OrderLedgerStatus, PaymentMethod


class OrderLedgerState(Base):
    """
    Order Ledger State model.

    The first event seen for an order fixes its amounts; any later event that
    disagrees flags the order for operator review. Flagged orders are skipped
    by automated processing until the flag is resolved.
    """
    __tablename__ = "order_ledger_states"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    order_id = Column(String(64), nullable=False, unique=True)
    status = Column(Enum(OrderLedgerStatus, name="order_ledger_status"), default=OrderLedgerStatus.PENDING, nullable=False, index=True)

    # Parties (owner refs)
    restaurant_ref = Column(String(64), nullable=False)
    delivery_agent_ref = Column(String(64), nullable=False)
    client_ref = Column(String(64), nullable=False)

    # Reported amounts
    subtotal = Column(BigInteger, nullable=False)
    delivery_fee = Column(BigInteger, nullable=False)
    commission_rate = Column(Numeric(8, 6), nullable=False)
    payment_method = Column(Enum(PaymentMethod, name="payment_method"), nullable=False)

    # Operator review
    flagged = Column(Boolean, default=False, nullable=False, index=True)
    flag_reason = Column(Text, nullable=True)
    flagged_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<OrderLedgerState(order_id='{self.order_id}', status='{self.status.value}', flagged={self.flagged})>"
