"""
Ledger Transaction (posting) database model.

Immutable signed-amount entries against one account.
"""

from sqlalchemy import Column, Integer, BigInteger, ForeignKey, DateTime, Enum, String, Index, event
from sqlalchemy.orm import relationship
from ledger_backend.app.db.session import Base
from ledger_backend.app.models.ledger_enums import TransactionType


class LedgerTransaction(Base):
    """
    Ledger Transaction model.

    Immutable record of financial movement, amounts in integer minor units.
    Every batch nets to zero per order reference.
    NO updates or deletions allowed: corrections are reversing entries.
    """
    __tablename__ = "ledger_transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Linkage
    batch_id = Column(Integer, ForeignKey("posting_batches.id"), nullable=False, index=True)
    idempotency_key = Column(String(200), nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    order_id = Column(String(64), nullable=True, index=True)
    settlement_id = Column(Integer, ForeignKey("settlements.id"), nullable=True, index=True)

    # Entry details
    type = Column(Enum(TransactionType, name="transaction_type"), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    description = Column(String(255), nullable=True)

    # Reversing entries point at the posting they negate
    reverses_transaction_id = Column(Integer, ForeignKey("ledger_transactions.id"), nullable=True)
    reversed_type = Column(Enum(TransactionType, name="transaction_type"), nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), nullable=False)

    account = relationship("Account", lazy="joined")

    __table_args__ = (
        Index("ix_ledger_transactions_account_created", "account_id", "created_at"),
    )

    @property
    def effective_type(self) -> TransactionType:
        """The type used to classify payables; reversals keep their original class."""
        return self.reversed_type or self.type

    def __repr__(self):
        return f"<LedgerTransaction(id={self.id}, type='{self.type.value}', amount={self.amount})>"


@event.listens_for(LedgerTransaction, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"Ledger transaction {target.id} is immutable")


@event.listens_for(LedgerTransaction, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"Ledger transaction {target.id} cannot be deleted")
