"""COD commission obligations owed by vendors"""

from sqlalchemy import Column, String, Numeric, ForeignKey, Index, DateTime, Text, JSON, Uuid, UniqueConstraint
import enum

from .base import BaseModel, enum_type

class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    REMITTED = "remitted"
    OVERDUE = "overdue"
    WAIVED = "waived"
    DISPUTED = "disputed"

REMITTABLE_STATUSES = (CommissionStatus.PENDING, CommissionStatus.OVERDUE)

class Commission(BaseModel):
    """One commission per (order, vendor)"""

    __tablename__ = "commissions"

    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False)
    vendor_id = Column(Uuid, nullable=False, index=True)
    order_number = Column(String(60), nullable=True)
    customer_name = Column(String(200), nullable=True)

    order_amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(20), default="cod", nullable=False)

    status = Column(enum_type(CommissionStatus), default=CommissionStatus.PENDING, nullable=False)
    due_date = Column(DateTime, nullable=False)

    remitted_at = Column(DateTime, nullable=True)
    remittance_method = Column(String(30), nullable=True)
    remittance_reference = Column(String(150), nullable=True)
    remittance_idempotency_key = Column(String(100), unique=True, nullable=True)
    wallet_transaction_id = Column(Uuid, nullable=True)

    remittance_history = Column(JSON, default=list, nullable=False)
    status_history = Column(JSON, default=list, nullable=False)
    admin_notes = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_id", "vendor_id", name="uq_commission_order_vendor"),
        Index("idx_commissions_vendor_status", "vendor_id", "status"),
        Index("idx_commissions_due_date", "due_date"),
    )
