"""
Payment webhook handlers
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import RedisCache
from app.core.database import get_db
from app.utils.dependencies import get_gateway, get_notifier, get_cache
from .schemas import WebhookAck
from .services import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Gateway webhook",
    description="Signature is verified against the raw body before any processing"
)
async def payment_webhook(
    request: Request,
    paymongo_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_gateway),
    cache: RedisCache = Depends(get_cache),
    notifier=Depends(get_notifier),
):
    """Handle PayMongo webhook events"""
    raw_body = await request.body()
    service = PaymentService(db, gateway, cache=cache, notifier=notifier)
    payment = await service.process_webhook(raw_body, paymongo_signature)
    if payment is None:
        logger.info("Webhook acknowledged without a matching payment")
        return WebhookAck()
    return WebhookAck(payment_id=payment.id, status=payment.status)
