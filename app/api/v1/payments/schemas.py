"""
Payment schemas for request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.payment import PaymentStatus, PaymentType, PaymentProvider

class CheckoutItem(BaseModel):
    """One cart line captured at payment time"""
    vendor_id: uuid.UUID
    product_id: str = Field(..., min_length=1)
    option_id: Optional[str] = None
    name: str = ""
    label: str = ""
    img_url: str = ""
    price: Decimal = Field(..., gt=0)
    quantity: int = Field(1, gt=0)

class CheckoutData(BaseModel):
    """Cart snapshot for pay-first checkout"""
    items: List[CheckoutItem] = Field(..., min_length=1)
    shipping_address: Dict[str, Any]
    customer_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    shipping_option: Optional[str] = "J&T"
    shipping_fee: Decimal = Field(Decimal("0"), ge=0)
    shipping_fees: Optional[Dict[str, Decimal]] = Field(
        None, description="Per-vendor shipping fee keyed by vendor ID"
    )
    agreement_details: Optional[str] = ""

class CheckoutPaymentCreate(BaseModel):
    """Schema for paying an existing order"""
    order_id: uuid.UUID
    amount: int = Field(..., ge=0, description="Amount in centavos")
    description: str = Field("Order payment", max_length=255)
    metadata: Dict[str, Any] = {}

class QRPHPaymentCreate(BaseModel):
    """Schema for pay-first QR Ph checkout"""
    amount: int = Field(..., ge=0, description="Amount in centavos")
    description: str = Field("Marketplace order", max_length=255)
    metadata: Dict[str, Any] = {}
    checkout_data: CheckoutData

class SubscriptionPaymentCreate(BaseModel):
    """Schema for subscription plan payment"""
    seller_id: uuid.UUID
    plan_code: str = Field(..., min_length=1, max_length=50)
    amount: int = Field(..., gt=0, description="Amount in centavos")
    description: Optional[str] = None
    metadata: Dict[str, Any] = {}

class CashInCreate(BaseModel):
    """Schema for vendor wallet top-up"""
    amount: int = Field(..., description="Amount in centavos")
    payment_method: str = "qrph"

    class Config:
        json_schema_extra = {
            "example": {"amount": 10000, "payment_method": "qrph"}
        }

class AttachMethodRequest(BaseModel):
    payment_intent_id: str = Field(..., pattern=r"^pi_")
    payment_method_id: str = Field(..., min_length=1)
    return_url: Optional[str] = None

class RefundRequest(BaseModel):
    """Schema for refund request"""
    payment_id: uuid.UUID
    amount: Optional[int] = Field(None, gt=0, description="Centavos; defaults to the unrefunded remainder")
    reason: str = Field("requested_by_customer", max_length=255)
    metadata: Dict[str, Any] = {}

class CancelPaymentRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class PaymentResponse(BaseModel):
    """Schema for payment response"""
    id: uuid.UUID
    user_id: uuid.UUID
    seller_id: Optional[uuid.UUID] = None
    order_id: Optional[uuid.UUID] = None
    parent_payment_id: Optional[uuid.UUID] = None
    type: PaymentType
    provider: PaymentProvider
    payment_method: Optional[str] = None
    status: PaymentStatus
    is_final: bool
    amount: int
    fee: int
    net_amount: int
    refunded_amount: int = 0
    currency: str
    description: Optional[str] = None
    payment_intent_id: Optional[str] = None
    qr_code_url: Optional[str] = None
    checkout_url: Optional[str] = None
    plan_code: Optional[str] = None
    orders_created: bool = False
    orders_partial: bool = False
    order_ids: List[str] = []
    order_creation_error: Optional[str] = None
    wallet_credited: bool = False
    bank_account: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class PaymentCreateResponse(BaseModel):
    """Response for payment creation"""
    payment: PaymentResponse
    client_key: Optional[str] = None
    payment_intent_id: Optional[str] = None
    qr_code_url: Optional[str] = None

class AttachMethodResponse(BaseModel):
    payment: PaymentResponse
    next_action: Optional[Dict[str, Any]] = None

class RecoverOrdersResponse(BaseModel):
    success: bool
    order_ids: List[str]
    orders_partial: bool
    message: str

class WebhookAck(BaseModel):
    """Webhooks are acknowledged even when no payment matches"""
    received: bool = True
    payment_id: Optional[uuid.UUID] = None
    status: Optional[PaymentStatus] = None
