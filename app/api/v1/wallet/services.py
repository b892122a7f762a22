"""
Vendor withdrawal service
Payout requests debit the wallet up front; rejection or cancellation credits it back
"""

from typing import Optional, Dict, Any
from datetime import datetime
import uuid
import logging

from sqlalchemy import select, update, func, or_, cast, String
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import RedisCache
from app.core.config import settings
from app.core.exceptions import (
    SettlementException,
    ValidationError,
    ForbiddenError,
    NotFoundError,
    ConflictError,
    DatabaseError,
)
from app.models import (
    Payment,
    PaymentType,
    PaymentStatus,
    PaymentProvider,
    WalletOwnerType,
    ReferenceType,
)
from app.services.email_service import EmailService
from app.services.ledger_service import LedgerService
from app.utils.helpers import utcnow, centavos_to_amount, percentage_fee, hash_payload, format_currency
from app.utils.validators import validate_payout_method, validate_bank_account
from app.api.v1.payments.state_machine import payment_state_machine
from .schemas import WithdrawalResponse

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

def withdrawal_key(vendor_id: uuid.UUID, amount: int, method: str, destination: Dict[str, str]) -> str:
    """Same vendor, amount and destination always yield the same key"""
    digest = hash_payload({
        "amount": amount,
        "method": method,
        "account_number": destination["account_number"],
        "account_name": destination["account_name"],
        "bank_name": destination["bank_name"],
    })
    return f"withdraw:{vendor_id}:{digest}"

def serialize_withdrawal(payment: Payment) -> Dict[str, Any]:
    return WithdrawalResponse.model_validate(payment).model_dump(mode="json")

class WithdrawalService:
    """Vendor payout requests and their admin workflow"""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[RedisCache] = None,
        notifier: Optional[EmailService] = None,
    ):
        self.db = db
        self.cache = cache
        self.notifier = notifier
        self.ledger = LedgerService(db, cache)
        self.state_machine = payment_state_machine

    async def _reload(self, payment_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_by_key(self, vendor_id: uuid.UUID, key: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.user_id == vendor_id,
                Payment.idempotency_key == key,
                Payment.type == PaymentType.WITHDRAW,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_withdrawal(self, payment_id: uuid.UUID) -> Payment:
        """
        Raises:
            NotFoundError: If payment does not exist
            ValidationError: If the payment is not a withdrawal
        """
        payment = await self._reload(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.type != PaymentType.WITHDRAW:
            raise ValidationError("Payment is not a withdrawal")
        return payment

    # ==================== Creation ====================

    async def create_withdrawal(
        self,
        vendor_id: uuid.UUID,
        amount: Any,
        bank_account: Optional[Dict[str, Any]],
        payout_method: str = "gcash",
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """
        Request a payout from the vendor wallet

        The conditional wallet debit and the pending withdrawal row commit in
        one transaction, so an insufficient balance leaves neither behind.
        A repeated request with the same key returns the original withdrawal.

        Args:
            vendor_id: Vendor requesting the payout
            amount: Amount in centavos
            bank_account: Payout destination details
            payout_method: gcash or paymaya
            idempotency_key: Caller key; derived from the request when absent

        Returns:
            Pending withdrawal payment

        Raises:
            ValidationError: On invalid input or insufficient balance
            ConflictError: If the key belongs to a different request
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < settings.MIN_WITHDRAWAL:
            raise ValidationError(
                f"Minimum withdrawal amount is {format_currency(centavos_to_amount(settings.MIN_WITHDRAWAL))}"
            )
        try:
            method = validate_payout_method(payout_method)
            destination = validate_bank_account(bank_account, method)
        except ValueError as e:
            raise ValidationError(str(e))

        key = (idempotency_key or "").strip() or withdrawal_key(vendor_id, amount, method, destination)
        existing = await self._find_by_key(vendor_id, key)
        if existing:
            logger.info(f"Withdrawal replay for vendor {vendor_id}: {existing.id}")
            return existing

        payment_id = uuid.uuid4()
        fee = percentage_fee(amount, settings.WITHDRAWAL_FEE_RATE)
        try:
            txn = await self.ledger.debit(
                vendor_id,
                centavos_to_amount(amount),
                reference=f"WITHDRAWAL-{payment_id}",
                reference_type=ReferenceType.WITHDRAWAL,
                reference_id=payment_id,
                description="Vendor Withdrawal",
                owner_type=WalletOwnerType.VENDOR,
            )
            payment = Payment(
                id=payment_id,
                user_id=vendor_id,
                type=PaymentType.WITHDRAW,
                provider=PaymentProvider.MANUAL,
                payment_method=method,
                status=PaymentStatus.PENDING,
                is_final=False,
                amount=amount,
                fee=fee,
                net_amount=max(0, amount - fee),
                currency=settings.CURRENCY,
                description="Vendor Withdrawal",
                bank_account=destination,
                idempotency_key=key,
                payment_metadata={"wallet_transaction_id": str(txn.id)},
            )
            self.db.add(payment)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._find_by_key(vendor_id, key)
            if existing:
                return existing
            raise ConflictError("Duplicate withdrawal request")
        except SettlementException:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error creating withdrawal for vendor {vendor_id}: {e}")
            raise DatabaseError("Failed to create withdrawal")

        logger.info(
            f"Withdrawal created: payment={payment_id} vendor={vendor_id} amount={amount} "
            f"fee={fee} balance_before={txn.balance_before} balance_after={txn.balance_after}"
        )
        await self._invalidate(vendor_id)
        await self._alert_new_withdrawal(payment)
        return await self._reload(payment_id)

    async def _alert_new_withdrawal(self, payment: Payment) -> None:
        if not self.notifier:
            return
        destination = payment.bank_account or {}
        try:
            await self.notifier.notify_admin(
                f"New withdrawal request {format_currency(centavos_to_amount(payment.amount))}",
                f"Vendor {payment.user_id} requested a {payment.payment_method} payout of "
                f"{format_currency(centavos_to_amount(payment.amount))} "
                f"(net {format_currency(centavos_to_amount(payment.net_amount))}) "
                f"to {destination.get('account_name')} {destination.get('account_number')}.\n"
                f"Withdrawal ID: {payment.id}",
            )
        except Exception as e:
            logger.error(f"Withdrawal alert failed for {payment.id}: {e}")

    # ==================== Lifecycle ====================

    async def _close(
        self,
        payment: Payment,
        new_status: PaymentStatus,
        values: Dict[str, Any],
        credit_reference: Optional[str] = None,
        credit_description: Optional[str] = None,
    ) -> Payment:
        """Conditionally move an open withdrawal, crediting the wallet back when asked"""
        if not self.state_machine.can_transition(payment.status, new_status, PaymentType.WITHDRAW):
            raise ValidationError(
                f"Withdrawal in status {payment.status.value} cannot become {new_status.value}"
            )

        now = utcnow()
        try:
            result = await self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.type == PaymentType.WITHDRAW,
                    Payment.status.in_(OPEN_STATUSES),
                )
                .values(status=new_status, updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Withdrawal status changed, try again")

            if credit_reference:
                await self.ledger.credit(
                    payment.user_id,
                    centavos_to_amount(payment.amount),
                    reference=credit_reference,
                    reference_type=ReferenceType.WITHDRAWAL_REVERSAL,
                    reference_id=payment.id,
                    description=credit_description,
                    owner_type=WalletOwnerType.VENDOR,
                )
            await self.db.commit()
        except SettlementException:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error moving withdrawal {payment.id} to {new_status.value}: {e}")
            raise DatabaseError("Failed to update withdrawal")

        await self._invalidate(payment.user_id)
        return await self._reload(payment.id)

    async def approve_withdrawal(
        self,
        admin_id: uuid.UUID,
        payment_id: uuid.UUID,
        admin_proof_url: Optional[str] = None,
        payout_reference: Optional[str] = None,
    ) -> Payment:
        """Mark a payout as sent; the wallet was already debited at creation"""
        payment = await self.get_withdrawal(payment_id)
        now = utcnow()
        payment = await self._close(
            payment,
            PaymentStatus.SUCCEEDED,
            {
                "is_final": True,
                "approved_by": admin_id,
                "approved_at": now,
                "paid_at": now,
                "admin_proof_url": admin_proof_url,
                "payout_reference": payout_reference,
            },
        )
        logger.info(f"Withdrawal {payment_id} approved by admin {admin_id}")
        return payment

    async def reject_withdrawal(
        self,
        admin_id: uuid.UUID,
        payment_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Reject a payout and return the full amount to the vendor wallet

        Raises:
            NotFoundError: If the withdrawal does not exist
            ValidationError: If it is no longer pending or processing
            ConflictError: If another request moved it first
        """
        payment = await self.get_withdrawal(payment_id)
        now = utcnow()
        payment = await self._close(
            payment,
            PaymentStatus.REJECTED,
            {
                "is_final": True,
                "rejected_by": admin_id,
                "rejected_at": now,
                "rejection_reason": reason or "Rejected by admin",
            },
            credit_reference=f"WITHDRAWAL-REJECTED-{payment.id}",
            credit_description="Withdrawal Rejection Refund",
        )
        logger.info(
            f"Withdrawal {payment_id} rejected by admin {admin_id}, "
            f"refunded {centavos_to_amount(payment.amount)}"
        )
        return payment

    async def cancel_withdrawal(
        self,
        vendor_id: Optional[uuid.UUID],
        payment_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Cancel an open payout and credit the amount back

        Args:
            vendor_id: Requesting vendor; None when an admin cancels
            payment_id: Withdrawal to cancel
            reason: Stored as the failure reason

        Raises:
            ForbiddenError: If the withdrawal belongs to another vendor
        """
        payment = await self.get_withdrawal(payment_id)
        if vendor_id is not None and payment.user_id != vendor_id:
            raise ForbiddenError("Withdrawal does not belong to this vendor")
        if payment.status not in OPEN_STATUSES:
            raise ValidationError("Only pending withdrawals can be cancelled")

        default_reason = "Cancelled by vendor" if vendor_id is not None else "Cancelled by admin"
        payment = await self._close(
            payment,
            PaymentStatus.CANCELLED,
            {
                "is_final": True,
                "cancelled_at": utcnow(),
                "failure_reason": reason or default_reason,
            },
            credit_reference=f"WITHDRAWAL-CANCELLED-{payment.id}",
            credit_description="Withdrawal Cancellation Refund",
        )
        logger.info(f"Withdrawal {payment_id} cancelled, refunded {centavos_to_amount(payment.amount)}")
        return payment

    async def update_withdrawal_status(
        self,
        admin_id: uuid.UUID,
        payment_id: uuid.UUID,
        status: Any,
        admin_proof_url: Optional[str] = None,
        payout_reference: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        """Route an admin status change to the matching lifecycle operation"""
        try:
            new_status = PaymentStatus(status)
        except ValueError:
            raise ValidationError("Invalid withdrawal status")

        if new_status == PaymentStatus.SUCCEEDED:
            return await self.approve_withdrawal(admin_id, payment_id, admin_proof_url, payout_reference)
        if new_status in (PaymentStatus.FAILED, PaymentStatus.REJECTED):
            return await self.reject_withdrawal(admin_id, payment_id, reason or "Rejected by admin")
        if new_status == PaymentStatus.CANCELLED:
            return await self.cancel_withdrawal(None, payment_id, reason or "Cancelled by admin")

        payment = await self.get_withdrawal(payment_id)
        values: Dict[str, Any] = {}
        if admin_proof_url:
            values["admin_proof_url"] = admin_proof_url
        if payout_reference:
            values["payout_reference"] = payout_reference
        payment = await self._close(payment, new_status, values)
        logger.info(f"Withdrawal {payment_id} status set to {new_status.value} by admin {admin_id}")
        return payment

    # ==================== Listings ====================

    async def get_vendor_withdrawals(
        self,
        vendor_id: uuid.UUID,
        page: int = 1,
        limit: int = 10,
        status: Optional[PaymentStatus] = None,
    ) -> Dict[str, Any]:
        cache_key = (
            f"vendorWithdrawals:{vendor_id}:page{page}:limit{limit}:"
            f"status{status.value if status else 'all'}"
        )
        if self.cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        query = select(Payment).where(
            Payment.user_id == vendor_id,
            Payment.type == PaymentType.WITHDRAW,
        )
        if status:
            query = query.where(Payment.status == status)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
        result = await self.db.execute(
            query.order_by(Payment.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        total_pages = (total + limit - 1) // limit

        data = {
            "withdrawals": [serialize_withdrawal(p) for p in result.scalars().all()],
            "current_page": page,
            "total_pages": total_pages,
            "total_withdrawals": total,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        }
        if self.cache:
            await self.cache.set(cache_key, data, settings.CACHE_TTL_DEFAULT)
        return data

    async def get_withdrawals_for_admin(
        self,
        status: Optional[PaymentStatus] = None,
        vendor_id: Optional[uuid.UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        q: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """
        Filtered withdrawal queue for the admin console

        Args:
            q: Case-insensitive match on payout reference or payout destination

        Returns:
            Dict with docs, page, limit, total_docs, total_pages, has_next_page, has_prev_page
        """
        query = select(Payment).where(Payment.type == PaymentType.WITHDRAW)
        if status:
            query = query.where(Payment.status == status)
        if vendor_id:
            query = query.where(Payment.user_id == vendor_id)
        if date_from:
            query = query.where(Payment.created_at >= date_from)
        if date_to:
            query = query.where(Payment.created_at <= date_to)
        if q:
            needle = f"%{q.strip().lower()}%"
            query = query.where(
                or_(
                    func.lower(Payment.payout_reference).like(needle),
                    func.lower(cast(Payment.bank_account, String)).like(needle),
                )
            )

        try:
            total = await self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
            result = await self.db.execute(
                query.order_by(Payment.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            payments = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching withdrawals for admin: {e}")
            raise DatabaseError("Failed to fetch withdrawals")

        total_pages = max(1, (total + limit - 1) // limit)
        return {
            "docs": [serialize_withdrawal(p) for p in payments],
            "page": page,
            "limit": limit,
            "total_docs": total,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        }

    async def _invalidate(self, vendor_id: uuid.UUID) -> None:
        await self.ledger.invalidate_wallet_cache(vendor_id)
        if not self.cache:
            return
        try:
            await self.cache.delete_pattern(f"vendorWithdrawals:{vendor_id}:*")
        except Exception as e:
            logger.warning(f"Withdrawal cache invalidation failed for {vendor_id}: {e}")
