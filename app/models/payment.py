"""
Payment model for every money movement attempt
Checkout, refund, withdrawal, cash-in and subscription share one table
"""

from sqlalchemy import Column, String, Integer, ForeignKey, Index, DateTime, Text, Boolean, JSON, Uuid, CheckConstraint, text
import enum

from .base import BaseModel, enum_type

class PaymentType(str, enum.Enum):
    """Payment type enumeration"""
    CHECKOUT = "checkout"
    REFUND = "refund"
    WITHDRAW = "withdraw"
    CASH_IN = "cash_in"
    SUBSCRIPTION = "subscription"

class PaymentStatus(str, enum.Enum):
    """Payment status enumeration"""
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

class PaymentProvider(str, enum.Enum):
    """Who moves the money"""
    PAYMONGO = "paymongo"
    WALLET = "wallet"
    MANUAL = "manual"

class PaymentMethod(str, enum.Enum):
    """Payment method enumeration"""
    QRPH = "qrph"
    GCASH = "gcash"
    PAYMAYA = "paymaya"
    CARD = "card"
    GRAB_PAY = "grab_pay"
    WALLET = "wallet"
    NONE = "none"

FINAL_STATUSES = {
    PaymentStatus.SUCCEEDED,
    PaymentStatus.FAILED,
    PaymentStatus.REJECTED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
}

class Payment(BaseModel):
    """Payment transaction records, amounts in centavos"""

    __tablename__ = "payments"

    # Parties
    user_id = Column(Uuid, nullable=False, index=True)
    seller_id = Column(Uuid, nullable=True, index=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True)
    parent_payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=True, index=True)

    # Classification
    type = Column(enum_type(PaymentType), nullable=False)
    provider = Column(enum_type(PaymentProvider), default=PaymentProvider.PAYMONGO, nullable=False)
    payment_method = Column(String(32), nullable=True)
    status = Column(enum_type(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    is_final = Column(Boolean, default=False, nullable=False)

    # Amounts (integer minor units)
    amount = Column(Integer, nullable=False)
    fee = Column(Integer, default=0, nullable=False)
    net_amount = Column(Integer, default=0, nullable=False)
    refunded_amount = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), default="PHP", nullable=False)
    description = Column(Text, nullable=True)

    # Gateway details
    payment_intent_id = Column(String(100), unique=True, nullable=True)
    client_key = Column(String(255), nullable=True)
    payment_method_id = Column(String(100), nullable=True)
    charge_id = Column(String(100), unique=True, nullable=True)
    refund_id = Column(String(100), nullable=True)
    qr_code_url = Column(Text, nullable=True)
    checkout_url = Column(Text, nullable=True)
    gateway_idempotency_key = Column(String(120), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    webhook_received = Column(Boolean, default=False, nullable=False)
    webhook_data = Column(JSON, nullable=True)

    # Caller idempotency
    idempotency_key = Column(String(255), nullable=True)

    # Pay-first checkout
    checkout_data = Column(JSON, nullable=True)
    orders_created = Column(Boolean, default=False, nullable=False)
    orders_partial = Column(Boolean, default=False, nullable=False)
    order_ids = Column(JSON, default=list, nullable=False)
    order_group_results = Column(JSON, default=list, nullable=False)
    order_creation_error = Column(Text, nullable=True)
    order_claimed_at = Column(DateTime, nullable=True)

    # Cash-in
    wallet_credited = Column(Boolean, default=False, nullable=False)
    wallet_credited_at = Column(DateTime, nullable=True)

    # Subscription
    plan_code = Column(String(50), nullable=True)

    # Withdrawal
    bank_account = Column(JSON, nullable=True)
    approved_by = Column(Uuid, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(Uuid, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    admin_notes = Column(Text, nullable=True)
    admin_proof_url = Column(Text, nullable=True)
    payout_reference = Column(String(120), nullable=True)

    # Timestamps
    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Additional data
    payment_metadata = Column(JSON, default=dict, nullable=False)
    failure_reason = Column(Text, nullable=True)

    # Indexes
    __table_args__ = (
        CheckConstraint("amount >= 0", name="check_payment_amount_non_negative"),
        Index(
            "uq_payments_order_type",
            "order_id",
            "type",
            unique=True,
            postgresql_where=text("order_id IS NOT NULL"),
            sqlite_where=text("order_id IS NOT NULL"),
        ),
        Index(
            "uq_payments_user_idempotency",
            "user_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
        Index("idx_payments_status", "status"),
        Index("idx_payments_type_status", "type", "status"),
    )

    def recompute_net_amount(self) -> None:
        self.net_amount = int(self.amount or 0) - int(self.fee or 0)

    def __str__(self):
        return f"Payment {self.id} - {self.amount} {self.currency} ({self.type}/{self.status})"
