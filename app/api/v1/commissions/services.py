"""
Commission service layer
COD commission obligations and their remittance from the vendor wallet
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta
from decimal import Decimal
import re
import uuid
import logging

from sqlalchemy import select, update, func, desc, asc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import RedisCache
from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import (
    SettlementException,
    ValidationError,
    NotFoundError,
    ConflictError,
    DatabaseError,
    ExternalServiceError,
    InsufficientBalanceError,
)
from app.models import (
    Commission,
    CommissionStatus,
    REMITTABLE_STATUSES,
    WalletOwnerType,
    ReferenceType,
)
from app.services.ledger_service import LedgerService
from app.utils.helpers import utcnow, quantize_money, format_currency, sha256_hex
from .schemas import CommissionResponse

logger = logging.getLogger(__name__)

OVERDUE_BUCKETS = [0, 7, 14, 30, 60, 90]

SORTABLE_FIELDS = {
    "created_at": Commission.created_at,
    "due_date": Commission.due_date,
    "commission_amount": Commission.commission_amount,
    "order_amount": Commission.order_amount,
    "status": Commission.status,
}

_UNSAFE_CHARS = re.compile(r"[<>\"'&]")

def clean_text(value: Optional[str], max_length: int = 1000) -> str:
    """Strip markup characters from free text"""
    if not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS.sub("", value).strip()[:max_length]

def remittance_key(commission_id: uuid.UUID, vendor_id: uuid.UUID) -> str:
    """Deterministic per commission and vendor, so duplicate remits collide"""
    return sha256_hex(f"{commission_id}:{vendor_id}")

def serialize_commission(commission: Commission) -> Dict[str, Any]:
    return CommissionResponse.model_validate(commission).model_dump(mode="json")

class CommissionService:
    """COD commission tracking and wallet remittance"""

    def __init__(
        self,
        db: AsyncSession,
        breaker: CircuitBreaker,
        cache: Optional[RedisCache] = None,
    ):
        self.db = db
        self.breaker = breaker
        self.cache = cache
        self.ledger = LedgerService(db, cache)

    def _record_infrastructure_failure(self, error: Exception) -> None:
        # Caller mistakes never trip the breaker
        if isinstance(error, (SQLAlchemyError, DatabaseError, ExternalServiceError)):
            self.breaker.record_failure()

    async def _get(self, commission_id: uuid.UUID) -> Optional[Commission]:
        result = await self.db.execute(
            select(Commission)
            .where(Commission.id == commission_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_for_order(self, order_id: uuid.UUID, vendor_id: uuid.UUID) -> Optional[Commission]:
        result = await self.db.execute(
            select(Commission)
            .where(Commission.order_id == order_id, Commission.vendor_id == vendor_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # ==================== Creation ====================

    async def create_cod_commission(
        self,
        order_id: uuid.UUID,
        vendor_id: uuid.UUID,
        order_amount: Any,
        commission_rate: Any = None,
        order_number: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> Commission:
        """
        Record the platform commission owed on a COD order

        Returns the existing commission when one is already recorded for
        the (order, vendor) pair.

        Args:
            order_id: Delivered COD order
            vendor_id: Vendor owing the commission
            order_amount: Order total in pesos
            commission_rate: Percentage; defaults to DEFAULT_COMMISSION_RATE

        Returns:
            Commission record

        Raises:
            ServiceUnavailableError: If the circuit breaker is open
            ValidationError: If the amount or rate is invalid
        """
        self.breaker.check()

        try:
            existing = await self._find_for_order(order_id, vendor_id)
            if existing:
                logger.info(f"Commission already exists for order {order_id} vendor {vendor_id}")
                return existing

            amount = quantize_money(order_amount)
            rate = quantize_money(commission_rate if commission_rate is not None else settings.DEFAULT_COMMISSION_RATE)
            if not amount.is_finite() or amount <= 0:
                raise ValidationError("Order amount must be a positive number")
            if not rate.is_finite() or rate < 0 or rate > 100:
                raise ValidationError("Commission rate must be between 0 and 100")

            now = utcnow()
            commission = Commission(
                id=uuid.uuid4(),
                order_id=order_id,
                vendor_id=vendor_id,
                order_number=clean_text(order_number, 60) or None,
                customer_name=clean_text(customer_name, 200) or None,
                order_amount=amount,
                commission_rate=rate,
                commission_amount=quantize_money(amount * rate / Decimal(100)),
                payment_method="cod",
                status=CommissionStatus.PENDING,
                due_date=now + timedelta(days=settings.COMMISSION_DUE_DAYS),
                remittance_history=[],
                status_history=[
                    {
                        "status": CommissionStatus.PENDING.value,
                        "changed_at": now.isoformat(),
                        "reason": "Commission created for COD order",
                    }
                ],
            )
            self.db.add(commission)
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                existing = await self._find_for_order(order_id, vendor_id)
                if existing is None:
                    raise
                logger.info(f"Commission for order {order_id} vendor {vendor_id} created concurrently")
                return existing
        except SettlementException as e:
            self._record_infrastructure_failure(e)
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.breaker.record_failure()
            logger.error(f"Error creating COD commission for order {order_id}: {e}")
            raise DatabaseError("Failed to create commission")

        logger.info(
            f"Created commission {commission.id} for order {order_id}, "
            f"amount: {commission.commission_amount}"
        )
        await self.invalidate_commission_cache(vendor_id)
        return commission

    # ==================== Vendor views ====================

    async def get_pending_commissions(
        self,
        vendor_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[CommissionStatus] = None,
        skip_cache: bool = False,
    ) -> Dict[str, Any]:
        """Outstanding commissions, earliest due first"""
        status_key = status.value if status else "open"
        cache_key = f"commissions:pending:{vendor_id}:page{page}:limit{limit}:status{status_key}"
        if self.cache and not skip_cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        query = select(Commission).where(Commission.vendor_id == vendor_id)
        if status:
            query = query.where(Commission.status == status)
        else:
            query = query.where(Commission.status.in_(REMITTABLE_STATUSES))

        total = await self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
        result = await self.db.execute(
            query.order_by(Commission.due_date.asc(), Commission.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        commissions = result.scalars().all()

        data = {
            "commissions": [serialize_commission(c) for c in commissions],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }
        if self.cache:
            await self.cache.set(cache_key, data, settings.CACHE_TTL_DEFAULT)
        return data

    async def get_commission_summary(self, vendor_id: uuid.UUID) -> Dict[str, Any]:
        """Totals per status for the vendor dashboard"""
        cache_key = f"commissions:summary:{vendor_id}"
        if self.cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        result = await self.db.execute(
            select(
                Commission.status,
                func.coalesce(func.sum(Commission.commission_amount), 0),
                func.count(Commission.id),
            )
            .where(Commission.vendor_id == vendor_id)
            .group_by(Commission.status)
        )
        totals = {row[0]: (quantize_money(row[1]), row[2]) for row in result.all()}

        def bucket(status: CommissionStatus) -> Dict[str, Any]:
            amount, count = totals.get(status, (Decimal("0.00"), 0))
            return {"amount": str(amount), "count": count}

        pending_amount = totals.get(CommissionStatus.PENDING, (Decimal("0.00"), 0))[0]
        overdue_amount = totals.get(CommissionStatus.OVERDUE, (Decimal("0.00"), 0))[0]
        summary = {
            "pending": bucket(CommissionStatus.PENDING),
            "remitted": bucket(CommissionStatus.REMITTED),
            "overdue": bucket(CommissionStatus.OVERDUE),
            "total_pending_amount": str(quantize_money(pending_amount + overdue_amount)),
        }
        if self.cache:
            await self.cache.set(cache_key, summary, settings.CACHE_TTL_DEFAULT)
        return summary

    async def get_remittance_history(
        self,
        vendor_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        query = select(Commission).where(
            Commission.vendor_id == vendor_id,
            Commission.status == CommissionStatus.REMITTED,
        )
        total = await self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
        result = await self.db.execute(
            query.order_by(Commission.remitted_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )

        history = []
        for commission in result.scalars().all():
            for entry in commission.remittance_history or []:
                history.append({
                    "commission_id": str(commission.id),
                    "order_number": commission.order_number or "N/A",
                    "commission_amount": str(quantize_money(commission.commission_amount)),
                    "remitted_at": entry.get("remitted_at"),
                    "amount": entry.get("amount"),
                    "method": entry.get("method"),
                    "reference_number": entry.get("reference_number"),
                    "wallet_transaction_id": entry.get("wallet_transaction_id"),
                    "status": entry.get("status"),
                    "notes": entry.get("notes"),
                })
        history.sort(key=lambda item: item["remitted_at"] or "", reverse=True)

        total_amount = sum((quantize_money(item["amount"] or 0) for item in history), Decimal("0.00"))
        return {
            "history": history,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
            "summary": {
                "total_remitted": len(history),
                "total_amount": str(quantize_money(total_amount)),
            },
        }

    # ==================== Remittance ====================

    async def _claim_remittance(self, commission_id: uuid.UUID, vendor_id: uuid.UUID) -> str:
        key = remittance_key(commission_id, vendor_id)
        result = await self.db.execute(
            update(Commission)
            .where(
                Commission.id == commission_id,
                Commission.vendor_id == vendor_id,
                Commission.status.in_(REMITTABLE_STATUSES),
                Commission.remittance_idempotency_key.is_(None),
            )
            .values(remittance_idempotency_key=key, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Duplicate transaction detected", error_code="DUPLICATE_TRANSACTION")
        return key

    async def remit_commission_via_wallet(
        self,
        commission_id: uuid.UUID,
        vendor_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
        invalidate: bool = True,
    ) -> Dict[str, Any]:
        """
        Pay a commission from the vendor wallet

        The remittance key claim, the wallet debit and the commission update
        commit together or not at all.

        Args:
            commission_id: Commission to settle
            vendor_id: Vendor who owns the commission and the wallet
            actor_id: Who requested the remittance, for the audit trail
            invalidate: Drop the vendor's commission and wallet caches afterwards

        Returns:
            Dict with success, commission, transaction and new_balance

        Raises:
            ServiceUnavailableError: If the circuit breaker is open
            NotFoundError: If no pending or overdue commission matches
            ConflictError: If the commission is already being remitted
            InsufficientBalanceError: If the wallet cannot cover the amount
        """
        self.breaker.check()

        try:
            commission = await self._get(commission_id)
            if (
                commission is None
                or commission.vendor_id != vendor_id
                or commission.status not in REMITTABLE_STATUSES
            ):
                raise NotFoundError("Commission not found or already processed")

            key = await self._claim_remittance(commission_id, vendor_id)
            wallet = await self.ledger.get_or_create(vendor_id, WalletOwnerType.VENDOR)

            amount = quantize_money(commission.commission_amount)
            if not amount.is_finite() or amount <= 0:
                raise ValidationError("Invalid commission amount. Please contact support.")
            balance = quantize_money(wallet.balance)
            if not balance.is_finite():
                raise ValidationError("Invalid wallet balance. Please contact support.")
            if balance < amount:
                raise InsufficientBalanceError(
                    f"Insufficient wallet balance. Have: {format_currency(balance)}, "
                    f"Need: {format_currency(amount)}"
                )

            txn = await self.ledger.debit(
                vendor_id,
                amount,
                reference=f"COMM-{commission.id}",
                reference_type=ReferenceType.COMMISSION,
                reference_id=commission.id,
                description=f"COD Commission remittance for Order #{commission.order_number or commission.order_id}",
                owner_type=WalletOwnerType.VENDOR,
            )

            commission = await self._get(commission_id)
            now = utcnow()
            commission.status = CommissionStatus.REMITTED
            commission.remitted_at = now
            commission.remittance_method = "wallet"
            commission.remittance_reference = txn.reference
            commission.remittance_idempotency_key = key
            commission.wallet_transaction_id = txn.id
            commission.remittance_history = list(commission.remittance_history or []) + [{
                "remitted_at": now.isoformat(),
                "amount": str(amount),
                "method": "wallet",
                "wallet_transaction_id": str(txn.id),
                "reference_number": txn.reference,
                "status": "completed",
                "notes": f"Remitted via wallet. Transaction ID: {txn.id}",
            }]
            commission.status_history = list(commission.status_history or []) + [{
                "status": CommissionStatus.REMITTED.value,
                "changed_at": now.isoformat(),
                "changed_by": str(actor_id) if actor_id else None,
                "reason": "Remitted via wallet deduction",
            }]
            await self.db.commit()
        except SettlementException as e:
            await self.db.rollback()
            self._record_infrastructure_failure(e)
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            self.breaker.record_failure()
            logger.error(f"Commission remittance {commission_id} failed: {e}")
            raise DatabaseError("Commission remittance failed")

        self.breaker.record_success()
        logger.info(
            f"Commission {commission_id} remitted via wallet: vendor={vendor_id} "
            f"amount={amount} txn={txn.id} balance_after={txn.balance_after}"
        )
        if invalidate:
            await self.invalidate_commission_cache(vendor_id)
            await self.ledger.invalidate_wallet_cache(vendor_id)

        return {
            "success": True,
            "commission": commission,
            "transaction": txn,
            "new_balance": txn.balance_after,
        }

    async def bulk_remit_commissions(
        self,
        commission_ids: List[uuid.UUID],
        vendor_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Remit several commissions one after another

        A failed item is recorded and the batch carries on.
        """
        results = {
            "successful": [],
            "failed": [],
            "total_amount": Decimal("0.00"),
            "timestamp": utcnow(),
        }

        for commission_id in commission_ids:
            try:
                result = await self.remit_commission_via_wallet(commission_id, vendor_id, actor_id, invalidate=False)
            except SettlementException as e:
                results["failed"].append({"commission_id": commission_id, "error": e.detail})
                continue
            commission = result["commission"]
            results["successful"].append({
                "commission_id": commission_id,
                "amount": commission.commission_amount,
                "transaction_id": result["transaction"].id,
            })
            results["total_amount"] = quantize_money(results["total_amount"] + commission.commission_amount)

        logger.info(
            f"Bulk remittance for vendor {vendor_id}: {len(results['successful'])} succeeded, "
            f"{len(results['failed'])} failed, total {results['total_amount']}"
        )
        if results["successful"]:
            await self.invalidate_commission_cache(vendor_id)
            await self.ledger.invalidate_wallet_cache(vendor_id)
        return results

    # ==================== Admin ====================

    async def get_all_commissions(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[CommissionStatus] = None,
        vendor_id: Optional[uuid.UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        """
        Filtered commission listing with a per-status summary

        Raises:
            ValidationError: If sort_by names an unsupported field
        """
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by}")

        query = select(Commission)
        if status:
            query = query.where(Commission.status == status)
        if vendor_id:
            query = query.where(Commission.vendor_id == vendor_id)
        if start_date:
            query = query.where(Commission.created_at >= start_date)
        if end_date:
            query = query.where(Commission.created_at <= end_date)

        order = desc if sort_order == "desc" else asc
        total = await self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
        result = await self.db.execute(
            query.order_by(order(SORTABLE_FIELDS[sort_by]))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        commissions = result.scalars().all()

        counts = await self.db.execute(
            select(
                Commission.status,
                func.count(Commission.id),
                func.coalesce(func.sum(Commission.commission_amount), 0),
            ).group_by(Commission.status)
        )
        status_summary = {
            row[0].value: {"count": row[1], "total": str(quantize_money(row[2]))}
            for row in counts.all()
        }

        return {
            "commissions": [serialize_commission(c) for c in commissions],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
            "status_summary": status_summary,
        }

    async def get_commission_analytics(self, period: str = "30d") -> Dict[str, Any]:
        """Status totals, daily trend, top owing vendors and overdue ageing"""
        digits = re.match(r"\d+", period or "")
        period_days = int(digits.group()) if digits and int(digits.group()) > 0 else 30
        now = utcnow()
        start_date = now - timedelta(days=period_days)

        total_rows = await self.db.execute(
            select(
                Commission.status,
                func.count(Commission.id),
                func.coalesce(func.sum(Commission.commission_amount), 0),
            )
            .where(Commission.created_at >= start_date)
            .group_by(Commission.status)
        )
        total_stats = [
            {"status": row[0].value, "count": row[1], "total_amount": str(quantize_money(row[2]))}
            for row in total_rows.all()
        ]

        day = func.date(Commission.created_at)
        daily_rows = await self.db.execute(
            select(
                day,
                Commission.status,
                func.count(Commission.id),
                func.coalesce(func.sum(Commission.commission_amount), 0),
            )
            .where(Commission.created_at >= start_date)
            .group_by(day, Commission.status)
            .order_by(day)
        )
        daily_stats = [
            {"date": str(row[0]), "status": row[1].value, "count": row[2], "amount": str(quantize_money(row[3]))}
            for row in daily_rows.all()
        ]

        pending_total = func.sum(Commission.commission_amount)
        vendor_rows = await self.db.execute(
            select(Commission.vendor_id, pending_total, func.count(Commission.id))
            .where(Commission.status.in_(REMITTABLE_STATUSES))
            .group_by(Commission.vendor_id)
            .order_by(pending_total.desc())
            .limit(10)
        )
        top_vendors = [
            {"vendor_id": str(row[0]), "total_pending": str(quantize_money(row[1])), "count": row[2]}
            for row in vendor_rows.all()
        ]

        overdue_rows = await self.db.execute(
            select(Commission.due_date, Commission.commission_amount)
            .where(Commission.status == CommissionStatus.OVERDUE)
        )
        buckets: Dict[str, Dict[str, Any]] = {}
        for due_date, amount in overdue_rows.all():
            days_overdue = (now - due_date).total_seconds() / 86400
            label = "90+"
            for lower, upper in zip(OVERDUE_BUCKETS, OVERDUE_BUCKETS[1:]):
                if lower <= days_overdue < upper:
                    label = str(lower)
                    break
            entry = buckets.setdefault(label, {"bucket": label, "count": 0, "total_amount": Decimal("0.00")})
            entry["count"] += 1
            entry["total_amount"] = quantize_money(entry["total_amount"] + quantize_money(amount))
        order = [str(b) for b in OVERDUE_BUCKETS[:-1]] + ["90+"]
        overdue_analysis = [
            {**buckets[label], "total_amount": str(buckets[label]["total_amount"])}
            for label in order
            if label in buckets
        ]

        return {
            "period": f"{period_days} days",
            "total_stats": total_stats,
            "daily_stats": daily_stats,
            "top_vendors": top_vendors,
            "overdue_analysis": overdue_analysis,
        }

    async def update_commission_status(
        self,
        commission_id: uuid.UUID,
        status: Any,
        admin_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> Commission:
        """
        Admin status override with an audit entry

        Raises:
            ValidationError: If the status is unknown
            NotFoundError: If the commission does not exist
        """
        try:
            new_status = CommissionStatus(status)
        except ValueError:
            raise ValidationError("Invalid status")

        commission = await self._get(commission_id)
        if not commission:
            raise NotFoundError("Commission not found")

        now = utcnow()
        notes = clean_text(notes)
        commission.status = new_status
        commission.admin_notes = notes
        commission.status_history = list(commission.status_history or []) + [{
            "status": new_status.value,
            "changed_at": now.isoformat(),
            "changed_by": str(admin_id),
            "reason": notes or f"Status changed to {new_status.value} by admin",
        }]
        if new_status == CommissionStatus.REMITTED:
            commission.remitted_at = now
            commission.remittance_method = "manual"

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error updating commission {commission_id} status: {e}")
            raise DatabaseError("Failed to update commission status")

        logger.info(f"Commission {commission_id} status set to {new_status.value} by admin {admin_id}")
        await self.invalidate_commission_cache(commission.vendor_id)
        return commission

    async def invalidate_commission_cache(self, vendor_id: uuid.UUID) -> None:
        if not self.cache:
            return
        try:
            await self.cache.delete_pattern(f"commissions:pending:{vendor_id}:*")
            await self.cache.delete(f"commissions:summary:{vendor_id}")
        except Exception as e:
            logger.warning(f"Commission cache invalidation failed for {vendor_id}: {e}")
