"""Account model."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Ledger identity of a user: one integer credit balance."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    has_received_bonus = Column(Boolean, nullable=False, default=False)
    bonus_emails = Column(JSON, nullable=False, default=list)  # emails that were ever granted the welcome bonus
    is_admin = Column(Boolean, nullable=False, default=False)
    stripe_customer_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    transactions = relationship(
        "CreditTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
