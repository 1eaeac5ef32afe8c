"""
Account database model.

One ledger participant per (account type, owner).
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, UniqueConstraint
from sqlalchemy.sql import func
from ledger_backend.app.db.session import Base
from ledger_backend.app.models.ledger_enums import AccountType


class Account(Base):
    """
    Account model.

    Created lazily on first posting and never deleted. The owner ref is an
    opaque id into the identity service; the platform singleton uses the
    fixed owner ref "platform". Balances are never stored here, they are
    always aggregated from the postings.
    """
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    account_type = Column(Enum(AccountType, name="account_type"), nullable=False, index=True)
    owner_ref = Column(String(64), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("account_type", "owner_ref", name="uq_accounts_type_owner"),
    )

    def __repr__(self):
        return f"<Account(id={self.id}, type='{self.account_type.value}', owner='{self.owner_ref}')>"
