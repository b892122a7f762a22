"""Models package initialization"""

from .base import Base, BaseModel
from .order import Order, OrderStatus, OrderPaymentStatus, EscrowStatus
from .payment import (
    Payment,
    PaymentType,
    PaymentStatus,
    PaymentProvider,
    PaymentMethod,
    FINAL_STATUSES,
)
from .wallet import (
    Wallet,
    WalletTransaction,
    WalletOwnerType,
    TransactionDirection,
    TransactionStatus,
    ReferenceType,
)
from .commission import Commission, CommissionStatus, REMITTABLE_STATUSES
from .cart import CartItem
from .idempotency import IdempotencyKey, IdempotencyStatus
from .listeners import register_model_listeners

register_model_listeners()

# Export all models
__all__ = [
    "Base",
    "BaseModel",
    "Order",
    "OrderStatus",
    "OrderPaymentStatus",
    "EscrowStatus",
    "Payment",
    "PaymentType",
    "PaymentStatus",
    "PaymentProvider",
    "PaymentMethod",
    "FINAL_STATUSES",
    "Wallet",
    "WalletTransaction",
    "WalletOwnerType",
    "TransactionDirection",
    "TransactionStatus",
    "ReferenceType",
    "Commission",
    "CommissionStatus",
    "REMITTABLE_STATUSES",
    "CartItem",
    "IdempotencyKey",
    "IdempotencyStatus",
]
