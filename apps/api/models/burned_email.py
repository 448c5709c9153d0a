"""BurnedEmail model for welcome-bonus abuse prevention."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Boolean, Column, DateTime, String

from database import Base


class BurnedEmail(Base):
    """Email address whose welcome-bonus eligibility outlives its account."""

    __tablename__ = "burned_emails"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Not unique at the storage level; duplicates are collapsed by reconciliation.
    email = Column(String, nullable=False, index=True)
    has_received_bonus = Column(Boolean, nullable=False, default=False)
    burned_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
