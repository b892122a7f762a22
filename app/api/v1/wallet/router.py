"""
Wallet and withdrawal API routes
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any
from datetime import datetime
import uuid

from app.core.cache import RedisCache
from app.core.database import get_db
from app.models import PaymentStatus, WalletOwnerType
from app.services.idempotency_service import IdempotencyService
from app.services.ledger_service import LedgerService
from app.utils.dependencies import (
    Actor,
    get_current_actor,
    require_admin,
    get_notifier,
    get_cache,
    get_idempotency_key,
)
from .schemas import (
    WithdrawalCreate,
    WithdrawalCancel,
    WithdrawalApprove,
    WithdrawalReject,
    WithdrawalStatusUpdate,
    WithdrawalResponse,
    WalletSummary,
    BalanceVerification,
)
from .services import WithdrawalService

router = APIRouter()

def get_withdrawal_service(
    db: AsyncSession = Depends(get_db),
    cache: RedisCache = Depends(get_cache),
    notifier=Depends(get_notifier),
) -> WithdrawalService:
    return WithdrawalService(db, cache=cache, notifier=notifier)

@router.get("/me", response_model=WalletSummary, summary="Get my wallet")
async def get_my_wallet(
    owner_type: WalletOwnerType = Query(WalletOwnerType.VENDOR),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    cache: RedisCache = Depends(get_cache)
):
    """Balance and recent transactions of the calling actor's wallet"""
    return await LedgerService(db, cache).get_wallet_summary(actor.id, owner_type)

@router.post(
    "/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request withdrawal",
    description="Debits the wallet immediately; a repeated identical request returns the original withdrawal"
)
async def create_withdrawal(
    data: WithdrawalCreate,
    actor: Actor = Depends(get_current_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: AsyncSession = Depends(get_db),
    service: WithdrawalService = Depends(get_withdrawal_service)
):
    async def handler():
        payment = await service.create_withdrawal(
            vendor_id=actor.id,
            amount=data.amount,
            bank_account=data.bank_account.model_dump(),
            payout_method=data.payout_method,
            idempotency_key=idempotency_key
        )
        return WithdrawalResponse.model_validate(payment)

    return await IdempotencyService(db).with_idempotency(
        idempotency_key, actor.id, "wallet.withdraw", data, handler
    )

@router.get("/withdrawals", summary="My withdrawals")
async def get_my_withdrawals(
    withdrawal_status: Optional[PaymentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    service: WithdrawalService = Depends(get_withdrawal_service)
) -> Dict[str, Any]:
    return await service.get_vendor_withdrawals(actor.id, page=page, limit=limit, status=withdrawal_status)

@router.post(
    "/withdrawals/{payment_id}/cancel",
    response_model=WithdrawalResponse,
    summary="Cancel withdrawal"
)
async def cancel_withdrawal(
    payment_id: uuid.UUID,
    data: Optional[WithdrawalCancel] = None,
    actor: Actor = Depends(get_current_actor),
    service: WithdrawalService = Depends(get_withdrawal_service)
):
    payment = await service.cancel_withdrawal(actor.id, payment_id, data.reason if data else None)
    return WithdrawalResponse.model_validate(payment)

@router.get("/admin/withdrawals", summary="Withdrawal queue (admin)")
async def get_withdrawals_for_admin(
    withdrawal_status: Optional[PaymentStatus] = Query(None, alias="status"),
    vendor_id: Optional[uuid.UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    q: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    admin: Actor = Depends(require_admin),
    service: WithdrawalService = Depends(get_withdrawal_service)
) -> Dict[str, Any]:
    return await service.get_withdrawals_for_admin(
        status=withdrawal_status,
        vendor_id=vendor_id,
        date_from=date_from,
        date_to=date_to,
        q=q,
        page=page,
        limit=limit
    )

@router.post(
    "/admin/withdrawals/{payment_id}/approve",
    response_model=WithdrawalResponse,
    summary="Approve withdrawal (admin)"
)
async def approve_withdrawal(
    payment_id: uuid.UUID,
    data: Optional[WithdrawalApprove] = None,
    admin: Actor = Depends(require_admin),
    service: WithdrawalService = Depends(get_withdrawal_service)
):
    data = data or WithdrawalApprove()
    payment = await service.approve_withdrawal(
        admin.id, payment_id, data.admin_proof_url, data.payout_reference
    )
    return WithdrawalResponse.model_validate(payment)

@router.post(
    "/admin/withdrawals/{payment_id}/reject",
    response_model=WithdrawalResponse,
    summary="Reject withdrawal (admin)",
    description="Credits the full amount back to the vendor wallet"
)
async def reject_withdrawal(
    payment_id: uuid.UUID,
    data: Optional[WithdrawalReject] = None,
    admin: Actor = Depends(require_admin),
    service: WithdrawalService = Depends(get_withdrawal_service)
):
    payment = await service.reject_withdrawal(admin.id, payment_id, data.reason if data else None)
    return WithdrawalResponse.model_validate(payment)

@router.post(
    "/admin/withdrawals/{payment_id}/status",
    response_model=WithdrawalResponse,
    summary="Set withdrawal status (admin)"
)
async def update_withdrawal_status(
    payment_id: uuid.UUID,
    data: WithdrawalStatusUpdate,
    admin: Actor = Depends(require_admin),
    service: WithdrawalService = Depends(get_withdrawal_service)
):
    payment = await service.update_withdrawal_status(
        admin.id,
        payment_id,
        data.status,
        admin_proof_url=data.admin_proof_url,
        payout_reference=data.payout_reference,
        reason=data.reason
    )
    return WithdrawalResponse.model_validate(payment)

@router.get(
    "/admin/{wallet_id}/verify",
    response_model=BalanceVerification,
    summary="Reconcile wallet balance (admin)",
    description="Recomputes the balance from completed ledger entries"
)
async def verify_wallet_balance(
    wallet_id: uuid.UUID,
    admin: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    return await LedgerService(db).verify_balance(wallet_id)
