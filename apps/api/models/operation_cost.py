"""OperationCost model: credit price of a paid feature."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class OperationCost(Base):
    """Catalog row mapping an operation id to its credit cost."""

    __tablename__ = "operation_costs"

    id = Column(String, primary_key=True)  # dataset_upload, model_training, prediction, report_generation
    name = Column(String, nullable=False)
    description = Column(String, nullable=False)
    credit_cost = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
