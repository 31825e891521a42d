"""Account model holding the shared credit balance of a tenant."""

import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_PRECISION = 14
CREDIT_SCALE = 4
CREDIT_NUMERIC = Numeric(CREDIT_PRECISION, CREDIT_SCALE)


class Account(Base):
    """Billing unit owning one credit balance.

    ``version`` is SQLAlchemy's version counter: every UPDATE of the row is
    issued as ``WHERE id = :id AND version = :seen`` and raises
    ``StaleDataError`` when another writer got there first.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("total_used >= 0", name="ck_accounts_total_used_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    company_name = Column(String, nullable=True)
    author_name = Column(String, nullable=True)
    balance = Column(CREDIT_NUMERIC, nullable=False, default=Decimal("0"))
    total_used = Column(CREDIT_NUMERIC, nullable=False, default=Decimal("0"))
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    transactions = relationship(
        "CreditTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CreditTransaction.id",
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}
