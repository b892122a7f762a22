"""
Commission API routes
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any
from datetime import datetime
import uuid

from app.core.cache import RedisCache
from app.core.circuit_breaker import CircuitBreaker
from app.core.database import get_db
from app.models import CommissionStatus
from app.services.idempotency_service import IdempotencyService
from app.utils.dependencies import (
    Actor,
    get_current_actor,
    require_admin,
    get_breaker,
    get_cache,
    get_idempotency_key,
    get_pagination_params,
)
from app.utils.pagination import PaginationParams
from .schemas import (
    CommissionCreate,
    BulkRemitRequest,
    CommissionStatusUpdate,
    CommissionResponse,
    WalletTransactionResponse,
    RemitResponse,
    BulkRemitResponse,
)
from .services import CommissionService

router = APIRouter()

def get_commission_service(
    db: AsyncSession = Depends(get_db),
    breaker: CircuitBreaker = Depends(get_breaker),
    cache: RedisCache = Depends(get_cache),
) -> CommissionService:
    return CommissionService(db, breaker, cache=cache)

@router.post(
    "",
    response_model=CommissionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record COD commission",
    description="Idempotent per (order, vendor); an existing commission is returned unchanged"
)
async def create_commission(
    data: CommissionCreate,
    admin: Actor = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service)
):
    commission = await service.create_cod_commission(
        order_id=data.order_id,
        vendor_id=data.vendor_id,
        order_amount=data.order_amount,
        commission_rate=data.commission_rate,
        order_number=data.order_number,
        customer_name=data.customer_name
    )
    return CommissionResponse.model_validate(commission)

@router.get("/pending", summary="Outstanding commissions")
async def get_pending_commissions(
    commission_status: Optional[CommissionStatus] = Query(None, alias="status"),
    pagination: PaginationParams = Depends(get_pagination_params),
    actor: Actor = Depends(get_current_actor),
    service: CommissionService = Depends(get_commission_service)
) -> Dict[str, Any]:
    """Get pending and overdue commissions of the calling vendor"""
    return await service.get_pending_commissions(
        actor.id,
        page=pagination.page,
        limit=pagination.limit,
        status=commission_status
    )

@router.get("/summary", summary="Commission totals")
async def get_commission_summary(
    actor: Actor = Depends(get_current_actor),
    service: CommissionService = Depends(get_commission_service)
) -> Dict[str, Any]:
    return await service.get_commission_summary(actor.id)

@router.get("/history", summary="Remittance history")
async def get_remittance_history(
    pagination: PaginationParams = Depends(get_pagination_params),
    actor: Actor = Depends(get_current_actor),
    service: CommissionService = Depends(get_commission_service)
) -> Dict[str, Any]:
    return await service.get_remittance_history(actor.id, page=pagination.page, limit=pagination.limit)

@router.post(
    "/bulk-remit",
    response_model=BulkRemitResponse,
    summary="Remit several commissions",
    description="Processed one at a time; failures are reported per commission"
)
async def bulk_remit_commissions(
    data: BulkRemitRequest,
    actor: Actor = Depends(get_current_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    service: CommissionService = Depends(get_commission_service)
):
    async def handler():
        result = await service.bulk_remit_commissions(data.commission_ids, actor.id, actor.id)
        return BulkRemitResponse(**result)

    return await IdempotencyService(db).with_idempotency(
        idempotency_key, actor.id, "commissions.bulk_remit", data, handler
    )

@router.post(
    "/{commission_id}/remit",
    response_model=RemitResponse,
    summary="Remit commission via wallet",
    description="Debits the vendor wallet and marks the commission remitted in one transaction"
)
async def remit_commission(
    commission_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    service: CommissionService = Depends(get_commission_service)
):
    """Remit commission from the calling vendor's wallet"""
    async def handler():
        result = await service.remit_commission_via_wallet(commission_id, actor.id, actor.id)
        return RemitResponse(
            success=result["success"],
            commission=CommissionResponse.model_validate(result["commission"]),
            transaction=WalletTransactionResponse.model_validate(result["transaction"]),
            new_balance=result["new_balance"]
        )

    return await IdempotencyService(db).with_idempotency(
        idempotency_key, actor.id, "commissions.remit", {"commission_id": commission_id}, handler
    )

@router.get("/admin", summary="All commissions (admin)")
async def get_all_commissions(
    commission_status: Optional[CommissionStatus] = Query(None, alias="status"),
    vendor_id: Optional[uuid.UUID] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    pagination: PaginationParams = Depends(get_pagination_params),
    admin: Actor = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service)
) -> Dict[str, Any]:
    return await service.get_all_commissions(
        page=pagination.page,
        limit=pagination.limit,
        status=commission_status,
        vendor_id=vendor_id,
        start_date=start_date,
        end_date=end_date,
        sort_by=sort_by,
        sort_order=sort_order
    )

@router.get("/admin/analytics", summary="Commission analytics (admin)")
async def get_commission_analytics(
    period: str = Query("30d", pattern=r"^\d+d?$"),
    admin: Actor = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service)
) -> Dict[str, Any]:
    return await service.get_commission_analytics(period)

@router.patch(
    "/admin/{commission_id}/status",
    response_model=CommissionResponse,
    summary="Override commission status (admin)"
)
async def update_commission_status(
    commission_id: uuid.UUID,
    data: CommissionStatusUpdate,
    admin: Actor = Depends(require_admin),
    service: CommissionService = Depends(get_commission_service)
):
    commission = await service.update_commission_status(commission_id, data.status, admin.id, data.notes)
    return CommissionResponse.model_validate(commission)
