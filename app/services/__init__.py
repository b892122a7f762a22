"""Services package"""

from .email_service import EmailService
from .cart_service import CartService
from .ledger_service import LedgerService
from .idempotency_service import IdempotencyService
from .order_materializer import OrderMaterializer

__all__ = [
    "EmailService",
    "CartService",
    "LedgerService",
    "IdempotencyService",
    "OrderMaterializer",
]
