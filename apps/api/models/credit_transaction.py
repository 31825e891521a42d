"""CreditTransaction model: append-only audit log of balance changes."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, event
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base
from models.account import CREDIT_NUMERIC


class CreditTransaction(Base):
    """Immutable record of one balance change."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(CREDIT_NUMERIC, nullable=False)
    balance_after = Column(CREDIT_NUMERIC, nullable=False)
    kind = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    refund_of_id = Column(Integer, ForeignKey("credit_transactions.id"), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")


@event.listens_for(CreditTransaction, "before_update")
def _reject_transaction_update(mapper, connection, target):
    raise ValueError(f"Credit transaction {target.id} is immutable once written.")
