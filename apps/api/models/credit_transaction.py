"""CreditTransaction model for the append-only credits ledger."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_KINDS = ("purchase", "usage", "refund", "bonus")


class CreditTransaction(Base):
    """Immutable record of one balance change."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_credit_transactions_account_sequence"),
        Index("ix_credit_transactions_account_kind_operation", "account_id", "kind", "operation_type"),
        # One purchase per payment reference (Stripe PaymentIntent id).
        Index(
            "uq_credit_transactions_purchase_resource",
            "resource_id",
            unique=True,
            postgresql_where=text("kind = 'purchase'"),
            sqlite_where=text("kind = 'purchase'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)  # replay order within the account
    kind = Column(String, nullable=False)  # purchase, usage, refund, bonus
    amount = Column(Integer, nullable=False)  # negative for usage
    balance = Column(Integer, nullable=False)  # balance after this transaction
    description = Column(String, nullable=False)
    operation_type = Column(String, nullable=True, index=True)
    resource_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    account = relationship("Account", back_populates="transactions")
