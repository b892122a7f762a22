"""
Payment API routes
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List
import uuid

from app.core.cache import RedisCache
from app.core.database import get_db
from app.models import PaymentType
from app.utils.dependencies import (
    Actor,
    get_current_actor,
    require_admin,
    get_gateway,
    get_notifier,
    get_cache,
    get_idempotency_key,
)
from .schemas import (
    CheckoutPaymentCreate,
    QRPHPaymentCreate,
    SubscriptionPaymentCreate,
    CashInCreate,
    AttachMethodRequest,
    RefundRequest,
    CancelPaymentRequest,
    PaymentResponse,
    PaymentCreateResponse,
    AttachMethodResponse,
    RecoverOrdersResponse,
)
from .services import PaymentService
from .webhooks import router as webhook_router

router = APIRouter()
router.include_router(webhook_router)

def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_gateway),
    cache: RedisCache = Depends(get_cache),
    notifier=Depends(get_notifier),
) -> PaymentService:
    return PaymentService(db, gateway, cache=cache, notifier=notifier)

def _created(result: dict) -> PaymentCreateResponse:
    return PaymentCreateResponse(
        payment=PaymentResponse.model_validate(result["payment"]),
        client_key=result.get("client_key"),
        payment_intent_id=result.get("payment_intent_id"),
        qr_code_url=result.get("qr_code_url")
    )

@router.post(
    "/checkout",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay for an order",
    description="Create a gateway payment intent for an existing order"
)
async def create_checkout_payment(
    data: CheckoutPaymentCreate,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    """Create checkout payment"""
    result = await service.create_checkout_payment(
        user_id=actor.id,
        order_id=data.order_id,
        amount=data.amount,
        description=data.description,
        metadata=data.metadata
    )
    return _created(result)

@router.post(
    "/qrph",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay-first QR Ph checkout",
    description="Collect payment by QR Ph; orders are created once it succeeds"
)
async def create_qrph_payment(
    data: QRPHPaymentCreate,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    """Create QR Ph payment with cart snapshot"""
    result = await service.create_qrph_payment(
        user_id=actor.id,
        amount=data.amount,
        description=data.description,
        metadata=data.metadata,
        checkout_data=data.checkout_data.model_dump(mode="json")
    )
    return _created(result)

@router.post(
    "/subscription",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay for a subscription plan"
)
async def create_subscription_payment(
    data: SubscriptionPaymentCreate,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    result = await service.create_subscription_qrph_payment(
        user_id=actor.id,
        seller_id=data.seller_id,
        plan_code=data.plan_code,
        amount=data.amount,
        description=data.description,
        metadata=data.metadata
    )
    return _created(result)

@router.post(
    "/cash-in",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Top up vendor wallet",
    description="Replays with the same Idempotency-Key return the original payment"
)
async def create_cash_in(
    data: CashInCreate,
    actor: Actor = Depends(get_current_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    service: PaymentService = Depends(get_payment_service)
):
    """Create cash-in payment"""
    result = await service.create_cash_in(
        user_id=actor.id,
        amount=data.amount,
        payment_method=data.payment_method,
        idempotency_key=idempotency_key
    )
    return _created(result)

@router.post(
    "/attach-method",
    response_model=AttachMethodResponse,
    summary="Attach payment method"
)
async def attach_payment_method(
    data: AttachMethodRequest,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    result = await service.attach_payment_method(
        user_id=actor.id,
        payment_intent_id=data.payment_intent_id,
        payment_method_id=data.payment_method_id,
        return_url=data.return_url
    )
    return AttachMethodResponse(
        payment=PaymentResponse.model_validate(result["payment"]),
        next_action=result.get("next_action")
    )

@router.get(
    "/status/{identifier}",
    response_model=PaymentResponse,
    summary="Check payment status",
    description="Poll the gateway and reconcile; accepts a payment ID or a pi_ intent ID"
)
async def check_payment_status(
    identifier: str,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    """Check payment status"""
    payment = await service.check_payment_status(identifier, actor_id=actor.id, is_admin=actor.is_admin)
    return PaymentResponse.model_validate(payment)

@router.post(
    "/refund",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund payment"
)
async def create_refund(
    data: RefundRequest,
    admin: Actor = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service)
):
    """Refund all or part of a checkout payment (admin only)"""
    refund = await service.create_refund(
        user_id=admin.id,
        payment_id=data.payment_id,
        amount=data.amount,
        reason=data.reason,
        metadata=data.metadata
    )
    return PaymentResponse.model_validate(refund)

@router.get(
    "/my-payments",
    response_model=List[PaymentResponse],
    summary="Get payment history"
)
async def get_my_payments(
    payment_type: Optional[PaymentType] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    payments = await service.get_user_payments(actor.id, payment_type, limit)
    return [PaymentResponse.model_validate(p) for p in payments]

@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment details"
)
async def get_payment(
    payment_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    payment = await service.get_payment(payment_id, actor_id=actor.id, is_admin=actor.is_admin)
    return PaymentResponse.model_validate(payment)

@router.post(
    "/{payment_id}/cancel",
    response_model=PaymentResponse,
    summary="Cancel unpaid payment"
)
async def cancel_payment(
    payment_id: uuid.UUID,
    data: Optional[CancelPaymentRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: PaymentService = Depends(get_payment_service)
):
    payment = await service.cancel_payment(actor.id, payment_id, data.reason if data else None)
    return PaymentResponse.model_validate(payment)

@router.post(
    "/{payment_id}/recover-orders",
    response_model=RecoverOrdersResponse,
    summary="Recover orders",
    description="Create the missing orders of a succeeded pay-first payment (admin only)"
)
async def recover_orders(
    payment_id: uuid.UUID,
    admin: Actor = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service)
):
    result = await service.recover_orders_for_payment(payment_id)
    return RecoverOrdersResponse(**result)
