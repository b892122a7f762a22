"""Order model written by settlement flows"""

from sqlalchemy import Column, String, Numeric, Index, DateTime, JSON, Uuid
import enum

from .base import BaseModel, enum_type

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    COD = "cod"
    REFUNDED = "refunded"

class EscrowStatus(str, enum.Enum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"

class Order(BaseModel):
    """One order per vendor"""

    __tablename__ = "orders"

    # Order identification
    order_number = Column(String(50), unique=True, nullable=False, index=True)

    # Parties
    buyer_id = Column(Uuid, nullable=False, index=True)
    vendor_id = Column(Uuid, nullable=False, index=True)
    payment_id = Column(Uuid, nullable=True, index=True)

    # Status
    status = Column(enum_type(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True)
    payment_status = Column(enum_type(OrderPaymentStatus), default=OrderPaymentStatus.PENDING, nullable=False)
    escrow_status = Column(enum_type(EscrowStatus), default=EscrowStatus.NONE, nullable=False)

    # Amounts
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_fee = Column(Numeric(12, 2), default=0, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(30), nullable=False)

    # Contents
    items = Column(JSON, default=list, nullable=False)
    shipping_address = Column(JSON, nullable=True)
    tracking_number = Column(String(100), nullable=True)
    agreement_message = Column(String(500), nullable=True)

    # Timestamps
    paid_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_orders_vendor_status", "vendor_id", "status"),
    )
