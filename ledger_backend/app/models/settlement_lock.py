"""
Settlement Lock database model.

Single writer per (account, period) through a DB-level unique constraint.
"""

from sqlalchemy import Column, Integer, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from ledger_backend.app.db.session import Base


class SettlementLock(Base):
    """
    Settlement Lock model.

    Inserted at the start of a settlement run and deleted in the same
    transaction. A concurrent run for the same account and period blocks on
    the unique index until the first one commits.
    """
    __tablename__ = "settlement_locks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)

    locked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "period_start", "period_end", name="uq_settlement_locks_account_period"),
    )

    def __repr__(self):
        return f"<SettlementLock(account_id={self.account_id}, period=[{self.period_start}, {self.period_end}))>"
