"""
Settlement database models.

Groups the payable postings of one account for one period into one payout.
"""

from sqlalchemy import Column, Integer, BigInteger, ForeignKey, DateTime, Enum, String, UniqueConstraint
from ledger_backend.app.core.timeutils import utcnow
from ledger_backend.app.db.session import Base
from ledger_backend.app.models.ledger_enums import SettlementStatus, PayoutStatus


class Settlement(Base):
    """
    Settlement model.

    Periodic payout for one account over the half-open period
    [period_start, period_end). Moves OPEN -> PAID exactly once, and only on
    a success confirmation from the payout rail.
    """
    __tablename__ = "settlements"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)

    # Financials
    total_amount = Column(BigInteger, nullable=False)

    # Status
    status = Column(Enum(SettlementStatus, name="settlement_status"), default=SettlementStatus.OPEN, nullable=False, index=True)

    # Payout Flow
    payout_status = Column(Enum(PayoutStatus, name="payout_status"), default=PayoutStatus.NOT_REQUESTED, nullable=False)
    payout_attempts = Column(Integer, default=0, nullable=False)
    payout_reference = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "period_start", "period_end", name="uq_settlements_account_period"),
    )

    def __repr__(self):
        return f"<Settlement(id={self.id}, status='{self.status.value}', amount={self.total_amount})>"


class SettlementItem(Base):
    """
    Settled posting.

    The unique transaction id guarantees a posting is paid out at most once.
    """
    __tablename__ = "settlement_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("ledger_transactions.id"), nullable=False, unique=True)

    def __repr__(self):
        return f"<SettlementItem(settlement_id={self.settlement_id}, transaction_id={self.transaction_id})>"
