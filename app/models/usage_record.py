from sqlalchemy import Column, String, Integer, Enum as SQLEnum, Uuid
import uuid
import enum
from .base import Base, TimestampMixin

class OperationKind(str, enum.Enum):
    """Credit-consuming operations"""
    GENERATION = "generation"
    IMPROVEMENT = "improvement"

class UsageRecord(Base, TimestampMixin):
    """Append-only audit entry written once per successful credit deduction"""
    __tablename__ = "usage_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # Credits deducted
    operation_kind = Column(
        SQLEnum(OperationKind, name="operation_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    balance_after = Column(Integer, nullable=False)  # Remaining credits after this deduction
