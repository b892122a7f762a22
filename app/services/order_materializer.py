"""
Order materialization for pay-first payments

A succeeded payment's checkout snapshot becomes one paid, escrow-held order
per vendor. The payment row itself is the lock: a conditional UPDATE marks
it ``in_progress`` and only the caller whose UPDATE matched proceeds.
"""

from collections import OrderedDict
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import asyncio
import logging
import uuid

from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import RedisCache
from app.core.config import settings
from app.core.exceptions import NotFoundError, ValidationError
from app.models import (
    Payment,
    PaymentStatus,
    Order,
    OrderStatus,
    OrderPaymentStatus,
    EscrowStatus,
)
from app.services.cart_service import CartService
from app.services.email_service import EmailService
from app.utils.helpers import (
    utcnow,
    quantize_money,
    generate_order_number,
    generate_tracking_number,
)

logger = logging.getLogger(__name__)

class OrderGroupsFailed(ValidationError):
    """No vendor group produced an order; the claim has already been released"""

    def __init__(self, detail: str = "Failed to create any orders from payment"):
        super().__init__(detail)

IN_PROGRESS = "in_progress"

GROUP_CREATED = "created"
GROUP_FAILED = "failed"

def order_cache_keys(user_id, vendor_ids, order_ids, product_ids) -> List[str]:
    keys = [f"orders:user:{user_id}", "adminDashboardStats"]
    keys.extend(f"orders:vendor:{v}" for v in vendor_ids)
    keys.extend(f"orders:{o}" for o in order_ids)
    keys.extend(f"orders:product:{p}" for p in product_ids)
    return keys

class OrderMaterializer:
    """Creates orders from a succeeded payment exactly once"""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[RedisCache] = None,
        cart_service: Optional[CartService] = None,
        notifier: Optional[EmailService] = None,
        stale_minutes: Optional[int] = None,
        wait_seconds: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.db = db
        self.cache = cache
        self.cart_service = cart_service or CartService(db)
        self.notifier = notifier
        self.stale_after = timedelta(
            minutes=stale_minutes if stale_minutes is not None else settings.ORDER_CLAIM_STALE_MINUTES
        )
        self.wait_seconds = wait_seconds if wait_seconds is not None else settings.ORDER_CLAIM_WAIT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.ORDER_CLAIM_POLL_INTERVAL

    async def _load(self, payment_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def materialize(self, payment_id: uuid.UUID, retry_failed: bool = False) -> List[str]:
        """
        Create orders for a succeeded pay-first payment

        Args:
            payment_id: Payment carrying checkout_data
            retry_failed: Also re-run vendor groups that failed on a previous pass

        Returns:
            IDs of all orders recorded for the payment

        Raises:
            NotFoundError: If payment does not exist
            ValidationError: If payment is not eligible or no order could be created
        """
        payment = await self._load(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.SUCCEEDED:
            raise ValidationError("Payment has not succeeded yet")
        if not payment.checkout_data:
            raise ValidationError("No checkout data found in payment")

        if payment.orders_created and not (retry_failed and payment.orders_partial):
            logger.info(f"Orders already created for payment {payment_id}: {payment.order_ids}")
            return list(payment.order_ids or [])

        if not await self._claim(payment_id, retry_failed):
            logger.warning(f"Order creation for payment {payment_id} is being handled by another worker")
            return await self._wait_for_claim_release(payment_id)

        try:
            return await self._create_orders(payment_id)
        except OrderGroupsFailed:
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error creating orders from payment {payment_id}: {e}")
            await self._release_with_error(payment_id, str(e))
            raise

    async def _claim(self, payment_id: uuid.UUID, retry_failed: bool) -> bool:
        now = utcnow()
        cutoff = now - self.stale_after

        eligible = Payment.orders_created.is_(False)
        if retry_failed:
            eligible = or_(eligible, Payment.orders_partial.is_(True))

        result = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                eligible,
                or_(
                    Payment.order_creation_error.is_(None),
                    Payment.order_creation_error != IN_PROGRESS,
                    Payment.order_claimed_at.is_(None),
                    Payment.order_claimed_at < cutoff,
                ),
            )
            .values(order_creation_error=IN_PROGRESS, order_claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        claimed = result.rowcount == 1
        if claimed:
            logger.info(f"Claimed order creation for payment {payment_id}")
        return claimed

    async def _wait_for_claim_release(self, payment_id: uuid.UUID) -> List[str]:
        """Poll until the winning worker releases its claim or the wait budget runs out"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while True:
            payment = await self._load(payment_id)
            order_ids = list(payment.order_ids or []) if payment else []
            in_progress = payment is not None and payment.order_creation_error == IN_PROGRESS
            await self.db.commit()
            if not in_progress or loop.time() >= deadline:
                return order_ids
            await asyncio.sleep(self.poll_interval)

    async def _create_orders(self, payment_id: uuid.UUID) -> List[str]:
        payment = await self._load(payment_id)
        checkout: Dict[str, Any] = dict(payment.checkout_data or {})
        user_id = payment.user_id
        previous = {r.get("vendor_id"): r for r in (payment.order_group_results or [])}
        order_ids: List[str] = list(payment.order_ids or [])

        items = checkout.get("items") or []
        if not items:
            raise ValidationError("No items found in checkout data")

        groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for item in items:
            vendor_id = item.get("vendor_id")
            if not vendor_id:
                logger.warning(f"Checkout item without vendor_id skipped on payment {payment_id}: {item}")
                continue
            groups.setdefault(str(vendor_id), []).append(item)

        if not groups:
            raise ValidationError("No valid items with vendor_id found")

        logger.info(f"Creating orders from payment {payment_id}: {len(items)} items, {len(groups)} vendors")

        results: List[Dict[str, Any]] = []
        created_groups: List[str] = []
        for vendor_id, vendor_items in groups.items():
            prior = previous.get(vendor_id)
            if prior and prior.get("status") == GROUP_CREATED:
                results.append(prior)
                continue
            try:
                order_id = await self._create_vendor_order(payment_id, user_id, vendor_id, vendor_items, checkout)
            except Exception as e:
                await self.db.rollback()
                logger.error(f"Failed to create order for vendor {vendor_id} on payment {payment_id}: {e}")
                results.append({"vendor_id": vendor_id, "status": GROUP_FAILED, "error": str(e)[:500]})
                continue
            order_ids.append(order_id)
            created_groups.append(vendor_id)
            results.append({
                "vendor_id": vendor_id,
                "status": GROUP_CREATED,
                "order_id": order_id,
                "item_count": len(vendor_items),
            })

        failed = [r for r in results if r["status"] == GROUP_FAILED]
        if not order_ids:
            await self._release_with_error(payment_id, "Failed to create any orders from payment", results)
            raise OrderGroupsFailed()

        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(
                order_ids=order_ids,
                orders_created=True,
                orders_partial=bool(failed),
                order_group_results=results,
                order_creation_error=(
                    f"{len(failed)} vendor group(s) failed" if failed else None
                ),
                order_claimed_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Orders created from payment {payment_id}: {order_ids}")

        purchased = [item for v in created_groups for item in groups[v]]
        await self._after_commit(payment_id, user_id, created_groups, order_ids, purchased)
        if failed:
            await self._alert(
                f"Partial order creation for payment {payment_id}",
                f"{len(failed)} vendor group(s) failed: "
                + ", ".join(f"{r['vendor_id']} ({r.get('error')})" for r in failed),
            )
        return order_ids

    async def _create_vendor_order(
        self,
        payment_id: uuid.UUID,
        user_id: uuid.UUID,
        vendor_id: str,
        items: List[Dict[str, Any]],
        checkout: Dict[str, Any],
    ) -> str:
        subtotal = sum(
            (Decimal(str(item.get("price") or 0)) * int(item.get("quantity") or 1) for item in items),
            Decimal("0"),
        )
        shipping_fees = checkout.get("shipping_fees") or {}
        shipping_fee = Decimal(str(shipping_fees.get(vendor_id, checkout.get("shipping_fee") or 0)))
        now = utcnow()

        order = Order(
            id=uuid.uuid4(),
            order_number=generate_order_number(),
            buyer_id=user_id,
            vendor_id=uuid.UUID(vendor_id),
            payment_id=payment_id,
            status=OrderStatus.PAID,
            payment_status=OrderPaymentStatus.PAID,
            escrow_status=EscrowStatus.HELD,
            subtotal=quantize_money(subtotal),
            shipping_fee=quantize_money(shipping_fee),
            total_amount=quantize_money(subtotal + shipping_fee),
            payment_method="qrph",
            items=[
                {
                    "product_id": item.get("product_id"),
                    "option_id": item.get("option_id"),
                    "name": item.get("name") or "",
                    "label": item.get("label") or "",
                    "img_url": item.get("img_url") or "",
                    "price": str(item.get("price")),
                    "quantity": int(item.get("quantity") or 1),
                }
                for item in items
            ],
            shipping_address=checkout.get("shipping_address") or {},
            tracking_number=generate_tracking_number(),
            agreement_message=(checkout.get("agreement_details") or "")[:500],
            paid_at=now,
        )
        self.db.add(order)
        await self.db.commit()
        logger.info(f"Order {order.id} created for vendor {vendor_id} (subtotal {order.subtotal})")
        return str(order.id)

    async def _release_with_error(
        self,
        payment_id: uuid.UUID,
        message: str,
        results: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "order_creation_error": message[:500],
            "order_claimed_at": None,
            "updated_at": utcnow(),
        }
        if results is not None:
            values["order_group_results"] = results
        await self.db.execute(
            update(Payment)
            .where(and_(Payment.id == payment_id, Payment.orders_created.is_(False)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        # Partial retries keep orders_created; only drop the claim
        await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.orders_created.is_(True),
                Payment.order_creation_error == IN_PROGRESS,
            )
            .values(order_creation_error="Retry of failed vendor groups did not complete", order_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self._alert(f"Order creation failed for payment {payment_id}", message)

    async def _after_commit(
        self,
        payment_id: uuid.UUID,
        user_id: uuid.UUID,
        vendor_ids: List[str],
        order_ids: List[str],
        items: List[Dict[str, Any]],
    ) -> None:
        if self.cache:
            product_ids = {str(i["product_id"]) for i in items if i.get("product_id")}
            try:
                await self.cache.delete_many(order_cache_keys(user_id, vendor_ids, order_ids, product_ids))
            except Exception as e:
                logger.warning(f"Order cache invalidation failed for payment {payment_id}: {e}")

        try:
            await self.cart_service.remove_items(
                user_id,
                [{"product_id": i.get("product_id"), "option_id": i.get("option_id")} for i in items],
            )
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to remove checked out items from cart for payment {payment_id}: {e}")

    async def _alert(self, subject: str, text: str) -> None:
        if not self.notifier:
            return
        try:
            await self.notifier.notify_admin(subject, text)
        except Exception as e:
            logger.error(f"Admin alert failed: {e}")
