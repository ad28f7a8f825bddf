"""CreditLedger model for per-image billing."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


class CreditLedger(Base):
    """Immutable credit ledger entry.

    ``id`` is the total order of entries for an account; ``balance_after`` is the
    running sum up to and including this entry.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("kind", "related_job_id", name="uq_credit_ledger_kind_job"),
        Index("ix_credit_ledger_account_created", "account_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)  # purchase, subscription, generation, refund, bonus
    description = Column(String, nullable=True)
    related_job_id = Column(String, nullable=True, index=True)
    billing_reference = Column(String, nullable=True, unique=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    account = relationship("Account", back_populates="credit_entries")
