"""
Payment service layer
Handles payment creation, gateway reconciliation and settlement side effects
"""

from typing import List, Optional, Dict, Any
from datetime import timedelta
import json
import uuid
import logging

from sqlalchemy import select, update, and_
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
    InvalidSignatureError,
)
from app.models import (
    Order,
    OrderStatus,
    OrderPaymentStatus,
    Payment,
    PaymentType,
    PaymentStatus,
    PaymentProvider,
    PaymentMethod,
    WalletOwnerType,
    ReferenceType,
)
from app.services.email_service import EmailService
from app.services.ledger_service import LedgerService
from app.services.order_materializer import OrderMaterializer
from app.utils.helpers import (
    utcnow,
    centavos_to_amount,
    percentage_fee,
    generate_idempotency_key,
    format_currency,
)
from .paymongo_client import (
    PayMongoClient,
    extract_qr_code_url,
    extract_checkout_url,
    extract_charge_id,
)
from .state_machine import payment_state_machine

logger = logging.getLogger(__name__)

# Statuses a customer may still cancel from
CANCELLABLE_STATUSES = {PaymentStatus.PENDING, PaymentStatus.AWAITING_PAYMENT}

# Statuses in which the gateway intent can still be paid
LIVE_INTENT_STATUSES = (PaymentStatus.AWAITING_PAYMENT, PaymentStatus.PROCESSING)

REFUNDABLE_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED)

class PaymentService:
    """Payment lifecycle: creation, reconciliation and downstream effects"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PayMongoClient,
        cache: Optional[RedisCache] = None,
        notifier: Optional[EmailService] = None,
        materializer: Optional[OrderMaterializer] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.cache = cache
        self.notifier = notifier
        self.ledger = LedgerService(db, cache)
        self.materializer = materializer or OrderMaterializer(db, cache=cache, notifier=notifier)
        self.state_machine = payment_state_machine

    # ==================== Lookups ====================

    async def _reload(self, payment_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.payment_intent_id == payment_intent_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_by_charge(self, charge_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.charge_id == charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_payment(
        self,
        payment_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
        is_admin: bool = False,
    ) -> Payment:
        """
        Get payment by ID

        Raises:
            NotFoundError: If payment does not exist
            ForbiddenError: If the actor neither owns the payment nor is an admin
        """
        payment = await self._reload(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if not is_admin and actor_id is not None and payment.user_id != actor_id:
            raise ForbiddenError("Payment does not belong to this user")
        return payment

    async def get_user_payments(
        self,
        user_id: uuid.UUID,
        payment_type: Optional[PaymentType] = None,
        limit: int = 50,
    ) -> List[Payment]:
        query = select(Payment).where(Payment.user_id == user_id)
        if payment_type:
            query = query.where(Payment.type == payment_type)
        result = await self.db.execute(query.order_by(Payment.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    # ==================== Creation ====================

    @staticmethod
    def _validate_amount(amount: Any, minimum: int = 0) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Amount must be an integer number of centavos")
        if amount < minimum:
            raise ValidationError(f"Amount must be at least {minimum} centavos")
        return amount

    async def _persist_new(self, payment: Payment) -> Payment:
        """Insert a payment row and commit it before any gateway call"""
        self.db.add(payment)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise
        logger.info(f"Payment {payment.id} recorded ({payment.type.value}, {payment.amount} centavos)")
        return payment

    async def create_checkout_payment(
        self,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create payment for an existing order

        Args:
            user_id: Buyer ID
            order_id: Order being paid
            amount: Amount in centavos, 0 for free orders
            description: Statement description
            metadata: Caller metadata stored on the payment

        Returns:
            Payment with gateway client key and intent ID

        Raises:
            ValidationError: If amount is invalid or order belongs to someone else
            NotFoundError: If order not found
            ConflictError: If the order is already paid or has an open payment for another amount
            ExternalServiceError: If the gateway call fails
        """
        amount = self._validate_amount(amount)
        metadata = dict(metadata or {})

        order = await self.db.get(Order, order_id)
        if not order:
            raise NotFoundError("Order not found")
        if order.buyer_id != user_id:
            raise ValidationError("Order does not belong to this user")

        paid = await self.db.execute(
            select(Payment.id).where(
                Payment.order_id == order_id,
                Payment.type != PaymentType.REFUND,
                Payment.status.in_(REFUNDABLE_STATUSES + (PaymentStatus.REFUNDED,)),
            )
        )
        if paid.first():
            raise ConflictError("Order has already been paid")

        # One checkout row per order; an unpaid earlier attempt is reused
        result = await self.db.execute(
            select(Payment).where(Payment.order_id == order_id, Payment.type == PaymentType.CHECKOUT)
        )
        payment = result.scalar_one_or_none()
        if payment and payment.is_final:
            raise ConflictError(f"Checkout payment for this order is already {payment.status.value}")

        # A live intent may already be in the customer's hands; hand it back
        if payment and payment.payment_intent_id and payment.status in LIVE_INTENT_STATUSES:
            if payment.amount != amount:
                raise ConflictError("An open payment for a different amount already exists for this order")
            logger.info(f"Checkout retry for order {order_id} reuses intent {payment.payment_intent_id}")
            return {
                "payment": payment,
                "client_key": payment.client_key,
                "payment_intent_id": payment.payment_intent_id,
            }

        if not payment:
            payment = Payment(
                id=uuid.uuid4(),
                user_id=user_id,
                order_id=order_id,
                type=PaymentType.CHECKOUT,
                provider=PaymentProvider.PAYMONGO,
                amount=amount,
                fee=0,
                currency=settings.CURRENCY,
                description=description,
                status=PaymentStatus.PENDING,
                payment_metadata=metadata,
            )
            try:
                await self._persist_new(payment)
            except IntegrityError:
                raise ConflictError("A checkout payment for this order is already being created")
        else:
            payment.amount = amount
            payment.description = description
            payment.payment_metadata = metadata
            await self.db.commit()

        if amount == 0:
            payment = await self._settle_without_gateway(payment)
            return {"payment": payment, "client_key": None, "payment_intent_id": None}

        gateway_key = generate_idempotency_key("checkout")
        await self._set_gateway_key(payment, gateway_key)

        intent = await self.gateway.create_payment_intent(
            amount,
            description,
            metadata={**metadata, "order_id": str(order_id), "user_id": str(user_id), "order_type": "checkout"},
            idempotency_key=gateway_key,
        )

        data = intent.get("data") or {}
        payment.payment_intent_id = data.get("id")
        payment.client_key = (data.get("attributes") or {}).get("client_key")
        payment.gateway_response = intent
        payment.status = PaymentStatus.AWAITING_PAYMENT
        payment.expires_at = utcnow() + timedelta(hours=settings.CHECKOUT_EXPIRY_HOURS)
        await self.db.commit()

        logger.info(f"Checkout payment created: payment={payment.id} order={order_id} amount={amount}")
        return {
            "payment": payment,
            "client_key": payment.client_key,
            "payment_intent_id": payment.payment_intent_id,
        }

    async def create_qrph_payment(
        self,
        user_id: uuid.UUID,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        checkout_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create pay-first QR Ph payment; orders are created after it succeeds

        Args:
            user_id: Buyer ID
            amount: Amount in centavos
            description: Statement description
            metadata: Caller metadata
            checkout_data: Cart snapshot with items, shipping address and contact

        Returns:
            Payment with client key, intent ID and QR image URL

        Raises:
            ValidationError: If amount or checkout data is invalid
            ExternalServiceError: If the gateway call fails
        """
        amount = self._validate_amount(amount)
        snapshot = self._normalize_checkout_data(checkout_data)
        metadata = dict(metadata or {})

        payment = await self._persist_new(
            Payment(
                id=uuid.uuid4(),
                user_id=user_id,
                type=PaymentType.CHECKOUT,
                provider=PaymentProvider.PAYMONGO,
                payment_method=PaymentMethod.QRPH.value,
                amount=amount,
                fee=percentage_fee(amount, settings.QRPH_FEE_RATE),
                currency=settings.CURRENCY,
                description=description,
                status=PaymentStatus.PENDING,
                checkout_data=snapshot,
                orders_created=False,
                payment_metadata={**metadata, "payment_method": "qrph"},
            )
        )

        if amount == 0:
            payment = await self._settle_without_gateway(payment)
            return {"payment": payment, "client_key": None, "payment_intent_id": None, "qr_code_url": None}

        gateway_metadata = {
            **metadata,
            "user_id": str(user_id),
            "payment_method": "qrph",
            "order_type": "preorder",
            "item_count": str(len(snapshot["items"])),
        }
        return await self._open_qr_intent(payment, description, gateway_metadata)

    async def create_subscription_qrph_payment(
        self,
        user_id: uuid.UUID,
        seller_id: uuid.UUID,
        plan_code: str,
        amount: int,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create QR Ph payment for a seller subscription plan"""
        amount = self._validate_amount(amount, minimum=1)
        if not plan_code:
            raise ValidationError("Plan code is required")
        description = description or f"Subscription {plan_code}"
        gateway_metadata = {
            **(metadata or {}),
            "user_id": str(user_id),
            "seller_id": str(seller_id),
            "plan_code": plan_code,
            "payment_method": "qrph",
            "order_type": "subscription",
        }

        payment = await self._persist_new(
            Payment(
                id=uuid.uuid4(),
                user_id=user_id,
                seller_id=seller_id,
                type=PaymentType.SUBSCRIPTION,
                provider=PaymentProvider.PAYMONGO,
                payment_method=PaymentMethod.QRPH.value,
                plan_code=plan_code,
                amount=amount,
                fee=percentage_fee(amount, settings.QRPH_FEE_RATE),
                currency=settings.CURRENCY,
                description=description,
                status=PaymentStatus.PENDING,
                payment_metadata=gateway_metadata,
            )
        )
        return await self._open_qr_intent(payment, description, gateway_metadata)

    async def create_cash_in(
        self,
        user_id: uuid.UUID,
        amount: int,
        payment_method: str = "qrph",
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create vendor wallet top-up via QR Ph

        A repeated key returns the payment recorded for it instead of creating
        another one. A recorded payment whose gateway call failed is retried.

        Args:
            user_id: Vendor ID whose wallet is credited on success
            amount: Amount in centavos
            payment_method: Only qrph is supported
            idempotency_key: Caller-supplied idempotency key

        Returns:
            Payment with client key, intent ID and QR image URL

        Raises:
            ValidationError: If amount or method is invalid
            ConflictError: If the key belongs to a different kind of payment
            ExternalServiceError: If the gateway call fails
        """
        amount = self._validate_amount(amount)
        if amount < settings.MIN_CASH_IN:
            raise ValidationError(f"Minimum cash-in amount is {settings.MIN_CASH_IN} centavos")
        if amount > settings.MAX_CASH_IN:
            raise ValidationError(f"Maximum cash-in amount is {settings.MAX_CASH_IN} centavos")

        method = str(payment_method or "qrph").strip().lower()
        if method != PaymentMethod.QRPH.value:
            raise ValidationError("Vendor cash-in is only available via QRPH")

        key = (idempotency_key or "").strip() or uuid.uuid4().hex

        existing = await self._find_by_idempotency_key(user_id, key)
        if existing is None:
            try:
                payment = await self._persist_new(
                    Payment(
                        id=uuid.uuid4(),
                        user_id=user_id,
                        type=PaymentType.CASH_IN,
                        provider=PaymentProvider.PAYMONGO,
                        payment_method=method,
                        amount=amount,
                        fee=percentage_fee(amount, settings.CASH_IN_FEE_RATE),
                        currency=settings.CURRENCY,
                        description="Wallet Top-up",
                        status=PaymentStatus.PENDING,
                        idempotency_key=key,
                        payment_metadata={"payment_method": method},
                    )
                )
            except IntegrityError:
                # Concurrent request with the same key won the insert
                existing = await self._find_by_idempotency_key(user_id, key)
                if existing is None:
                    raise ConflictError("Duplicate cash-in request")

        if existing is not None:
            if existing.type != PaymentType.CASH_IN:
                raise ConflictError("Idempotency key already used for a different payment", "IDEMPOTENCY_KEY_REUSED")
            if existing.payment_intent_id or existing.status != PaymentStatus.PENDING:
                logger.info(f"Cash-in replay for key {key}: payment={existing.id}")
                return self._qr_result(existing)
            payment = existing

        gateway_metadata = {
            "user_id": str(user_id),
            "type": "cash_in",
            "payment_method": method,
            "idempotency_key": key,
        }
        return await self._open_qr_intent(payment, "Wallet Top-up", gateway_metadata)

    async def _find_by_idempotency_key(self, user_id: uuid.UUID, key: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.user_id == user_id, Payment.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _set_gateway_key(self, payment: Payment, key: str) -> None:
        payment.gateway_idempotency_key = key
        await self.db.commit()

    async def _open_qr_intent(
        self,
        payment: Payment,
        description: str,
        gateway_metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Create intent, create a qrph method and attach it; the row stays pending on failure"""
        gateway_key = generate_idempotency_key(payment.type.value)
        await self._set_gateway_key(payment, gateway_key)

        intent = await self.gateway.create_payment_intent(
            payment.amount,
            description,
            metadata=gateway_metadata,
            allowed_methods=["qrph"],
            idempotency_key=gateway_key,
        )
        intent_data = intent.get("data") or {}
        logger.info(f"Payment intent {intent_data.get('id')} created for payment {payment.id}")

        method = await self.gateway.create_payment_method("qrph")
        method_id = (method.get("data") or {}).get("id")

        attached = await self.gateway.attach_payment_method(intent_data.get("id"), method_id)
        qr_code_url = extract_qr_code_url(attached)
        if not qr_code_url:
            logger.warning(f"No QR code URL in attach response for payment {payment.id}")

        payment.payment_intent_id = intent_data.get("id")
        payment.client_key = (intent_data.get("attributes") or {}).get("client_key")
        payment.payment_method_id = method_id
        payment.qr_code_url = qr_code_url
        payment.gateway_response = attached
        payment.status = PaymentStatus.AWAITING_PAYMENT
        payment.expires_at = utcnow() + timedelta(minutes=settings.QRPH_EXPIRY_MINUTES)
        await self.db.commit()

        logger.info(
            f"QRPH payment ready: payment={payment.id} type={payment.type.value} "
            f"intent={payment.payment_intent_id} amount={payment.amount}"
        )
        return self._qr_result(payment)

    @staticmethod
    def _qr_result(payment: Payment) -> Dict[str, Any]:
        return {
            "payment": payment,
            "client_key": payment.client_key,
            "payment_intent_id": payment.payment_intent_id,
            "qr_code_url": payment.qr_code_url,
        }

    @staticmethod
    def _normalize_checkout_data(checkout_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Validate a pay-first cart snapshot and reduce it to what order creation needs"""
        if not checkout_data or not checkout_data.get("items"):
            raise ValidationError("Checkout data with items is required for QRPH payment")
        if not checkout_data.get("customer_name"):
            raise ValidationError("Customer name is required")
        if not checkout_data.get("phone"):
            raise ValidationError("Phone number is required")
        if not checkout_data.get("shipping_address"):
            raise ValidationError("Shipping address is required")

        items = []
        for item in checkout_data["items"]:
            if not item.get("vendor_id"):
                raise ValidationError("Each item must have a vendor_id")
            if not item.get("product_id"):
                raise ValidationError("Each item must have a product_id")
            try:
                price = float(item.get("price") or 0)
                quantity = int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                raise ValidationError("Each item must have a valid price and quantity")
            if price <= 0:
                raise ValidationError("Each item must have a valid price")
            if quantity <= 0:
                raise ValidationError("Each item must have a valid quantity")
            items.append({
                "vendor_id": str(item["vendor_id"]),
                "product_id": str(item["product_id"]),
                "option_id": str(item["option_id"]) if item.get("option_id") else None,
                "name": item.get("name") or "",
                "label": item.get("label") or "",
                "img_url": item.get("img_url") or "",
                "price": str(item["price"]),
                "quantity": quantity,
            })

        snapshot = {
            "items": items,
            "shipping_address": checkout_data["shipping_address"],
            "customer_name": checkout_data["customer_name"],
            "phone": checkout_data["phone"],
            "shipping_option": checkout_data.get("shipping_option") or "J&T",
            "shipping_fee": str(checkout_data.get("shipping_fee") or 0),
            "agreement_details": checkout_data.get("agreement_details") or "",
        }
        if checkout_data.get("shipping_fees"):
            snapshot["shipping_fees"] = {
                str(vendor): str(fee) for vendor, fee in checkout_data["shipping_fees"].items()
            }
        return snapshot

    async def _settle_without_gateway(self, payment: Payment) -> Payment:
        """Free checkouts succeed immediately and never reach the gateway"""
        payment.provider = PaymentProvider.MANUAL
        payment.payment_method = PaymentMethod.NONE.value
        await self.db.commit()
        logger.info(f"Zero-amount payment {payment.id} settled without gateway")
        return await self.apply_gateway_status(payment, "succeeded")

    async def attach_payment_method(
        self,
        user_id: uuid.UUID,
        payment_intent_id: str,
        payment_method_id: str,
        return_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Attach a client-created payment method to an intent

        Returns:
            Payment and the gateway next_action

        Raises:
            NotFoundError: If no payment has this intent
            ForbiddenError: If payment belongs to someone else
            ConflictError: If payment is already settled
        """
        payment = await self._find_by_intent(payment_intent_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.user_id != user_id:
            raise ForbiddenError("Payment does not belong to this user")
        if payment.status == PaymentStatus.SUCCEEDED:
            raise ConflictError("Payment has already been completed")
        if payment.is_final:
            raise ConflictError(f"Payment is already {payment.status.value}")

        result = await self.gateway.attach_payment_method(payment_intent_id, payment_method_id, return_url)
        attributes = (result.get("data") or {}).get("attributes") or {}

        payment.payment_method_id = payment_method_id
        payment.gateway_response = result
        payment.qr_code_url = extract_qr_code_url(result) or payment.qr_code_url
        payment.checkout_url = extract_checkout_url(result) or payment.checkout_url
        if self.state_machine.can_transition(payment.status, PaymentStatus.PROCESSING, payment.type):
            payment.status = PaymentStatus.PROCESSING
        await self.db.commit()

        logger.info(f"Payment method attached: payment={payment.id} intent={payment_intent_id}")
        return {"payment": payment, "next_action": attributes.get("next_action")}

    # ==================== Reconciliation ====================

    async def check_payment_status(
        self,
        identifier: str,
        actor_id: Optional[uuid.UUID] = None,
        is_admin: bool = False,
    ) -> Payment:
        """
        Poll the gateway for a payment's status and apply it

        Ownership is checked before the gateway is contacted.

        Args:
            identifier: Payment UUID or gateway intent ID (pi_...)
            actor_id: Caller, when the poll must be restricted to the owner
            is_admin: Admins may poll any payment

        Returns:
            Updated payment

        Raises:
            ValidationError: If identifier is malformed or payment has no intent
            NotFoundError: If payment not found
            ForbiddenError: If the actor neither owns the payment nor is an admin
            ExternalServiceError: If the gateway call fails
        """
        identifier = (identifier or "").strip()
        if identifier.startswith("pi_"):
            payment = await self._find_by_intent(identifier)
            if not payment:
                raise NotFoundError("Payment record not found for this payment intent")
        else:
            try:
                payment_id = uuid.UUID(identifier)
            except ValueError:
                raise ValidationError(
                    "Invalid payment identifier. Must be a payment ID or a gateway payment intent ID starting with 'pi_'"
                )
            payment = await self._reload(payment_id)
            if not payment:
                raise NotFoundError("Payment record not found")

        if not is_admin and actor_id is not None and payment.user_id != actor_id:
            raise ForbiddenError("Payment does not belong to this user")

        if not payment.payment_intent_id:
            if payment.status == PaymentStatus.SUCCEEDED:
                return await self.apply_gateway_status(payment, "succeeded")
            raise ValidationError("Payment record does not have a gateway payment intent")

        intent = await self.gateway.retrieve_payment_intent(payment.payment_intent_id)
        attributes = (intent.get("data") or {}).get("attributes") or {}
        failure = attributes.get("last_payment_error") or {}

        logger.info(
            f"Checking payment status: payment={payment.id} intent={payment.payment_intent_id} "
            f"gateway_status={attributes.get('status')}"
        )
        return await self.apply_gateway_status(
            payment,
            attributes.get("status"),
            gateway_payload=intent,
            failure_reason=failure.get("message") if isinstance(failure, dict) else None,
            charge_id=extract_charge_id(intent),
        )

    async def apply_gateway_status(
        self,
        payment: Payment,
        gateway_status: Optional[str],
        gateway_payload: Optional[Dict[str, Any]] = None,
        failure_reason: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> Payment:
        """
        Apply a gateway-reported status; shared by webhook and polling

        The transition is a conditional UPDATE on the current status, so a
        replay or a concurrent reconciler changes nothing. Effects of success
        that are still outstanding are re-attempted on every call.

        Args:
            payment: Payment to reconcile
            gateway_status: Gateway status vocabulary (e.g. succeeded, paid)
            gateway_payload: Raw gateway resource, stored on change
            failure_reason: Reason for failed payments
            charge_id: Captured gateway payment ID

        Returns:
            Payment as stored after reconciliation
        """
        new_status = self.state_machine.map_gateway_status(gateway_status)
        if new_status is None:
            logger.info(f"Unmapped gateway status '{gateway_status}' for payment {payment.id}")
            return payment

        current = payment.status
        if new_status == current:
            await self._record_charge_id(payment, charge_id)
            if current == PaymentStatus.SUCCEEDED:
                await self._run_success_effects(payment.id)
            return await self._reload(payment.id)

        if not self.state_machine.can_transition(current, new_status, payment.type):
            logger.warning(
                f"Ignoring gateway transition {current.value} -> {new_status.value} for payment {payment.id}"
            )
            return payment

        now = utcnow()
        values: Dict[str, Any] = {"status": new_status, "updated_at": now}
        if gateway_payload is not None:
            values["gateway_response"] = gateway_payload
        if charge_id and not payment.charge_id:
            values["charge_id"] = charge_id
        if new_status == PaymentStatus.SUCCEEDED:
            values.update(paid_at=now, is_final=True)
            if current == PaymentStatus.CANCELLED:
                values["failure_reason"] = None
        elif new_status == PaymentStatus.FAILED:
            values.update(failed_at=now, is_final=True, failure_reason=failure_reason or "Payment failed")

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount == 1:
            logger.info(f"Payment status updated: payment={payment.id} {current.value} -> {new_status.value}")
        else:
            logger.info(f"Payment {payment.id} was reconciled concurrently")

        refreshed = await self._reload(payment.id)
        if refreshed.status == PaymentStatus.SUCCEEDED:
            await self._run_success_effects(refreshed.id)
            refreshed = await self._reload(payment.id)
            if current == PaymentStatus.CANCELLED and result.rowcount == 1:
                await self._alert_paid_after_cancel(refreshed)
        elif refreshed.status == PaymentStatus.FAILED and result.rowcount == 1:
            logger.warning(f"Payment {payment.id} failed: {refreshed.failure_reason}")
        return refreshed

    async def _alert_paid_after_cancel(self, payment: Payment) -> None:
        logger.warning(f"Payment {payment.id} was paid at the gateway after being cancelled")
        if not self.notifier:
            return
        try:
            await self.notifier.notify_admin(
                f"Payment {payment.id} succeeded after cancellation",
                f"Payment {payment.id} ({payment.type.value}, "
                f"{format_currency(centavos_to_amount(payment.amount))}) for user "
                f"{payment.user_id} was cancelled locally but the gateway reported it paid "
                f"(intent {payment.payment_intent_id}). Its success effects have been applied.",
            )
        except Exception as e:
            logger.error(f"Admin alert failed for payment {payment.id}: {e}")

    async def _record_charge_id(self, payment: Payment, charge_id: Optional[str]) -> None:
        if not charge_id or payment.charge_id:
            return
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.charge_id.is_(None))
            .values(charge_id=charge_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _run_success_effects(self, payment_id: uuid.UUID) -> None:
        """Order creation, order payment marking and wallet credit; each is idempotent"""
        payment = await self._reload(payment_id)

        if payment.type == PaymentType.CHECKOUT and payment.checkout_data and not payment.orders_created:
            try:
                order_ids = await self.materializer.materialize(payment.id)
                logger.info(f"Orders created from payment {payment.id}: {order_ids}")
            except SettlementException as e:
                logger.error(f"Failed to create orders from payment {payment.id}: {e.detail}")
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Failed to create orders from payment {payment.id}: {e}")
        elif payment.type == PaymentType.CHECKOUT and payment.order_id:
            await self._mark_order_paid(payment)

        if payment.type == PaymentType.CASH_IN and not payment.wallet_credited:
            try:
                await self.process_cash_in_success(payment)
            except SettlementException as e:
                logger.error(f"Failed to credit wallet for cash-in {payment.id}: {e.detail}")

    async def _mark_order_paid(self, payment: Payment) -> None:
        now = utcnow()
        result = await self.db.execute(
            update(Order)
            .where(Order.id == payment.order_id, Order.payment_status != OrderPaymentStatus.PAID)
            .values(
                payment_status=OrderPaymentStatus.PAID,
                status=OrderStatus.PAID,
                payment_id=payment.id,
                paid_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Order {payment.order_id} marked paid by payment {payment.id}")
            if self.cache:
                try:
                    await self.cache.delete_many([f"orders:{payment.order_id}", f"orders:user:{payment.user_id}"])
                except Exception as e:
                    logger.warning(f"Order cache invalidation failed for {payment.order_id}: {e}")

    async def process_cash_in_success(self, payment: Payment) -> Payment:
        """
        Credit the vendor wallet for a succeeded cash-in exactly once

        The wallet_credited flag flips in the same transaction as the ledger
        credit; a second caller's conditional flip matches no row.

        Raises:
            DatabaseError: If the credit transaction fails
        """
        if payment.type != PaymentType.CASH_IN:
            return payment

        try:
            now = utcnow()
            result = await self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment.id,
                    Payment.type == PaymentType.CASH_IN,
                    Payment.status == PaymentStatus.SUCCEEDED,
                    Payment.wallet_credited.is_(False),
                )
                .values(wallet_credited=True, wallet_credited_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                logger.info(f"Cash-in {payment.id} already credited or not succeeded")
                return await self._reload(payment.id)

            amount = centavos_to_amount(payment.net_amount)
            await self.ledger.credit(
                payment.user_id,
                amount,
                reference=f"CASHIN-{payment.id}",
                reference_type=ReferenceType.CASH_IN,
                reference_id=payment.id,
                description="Wallet top-up (Cash-in)",
                owner_type=WalletOwnerType.VENDOR,
            )
            await self.db.commit()
        except SettlementException:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Error processing cash-in success for {payment.id}: {e}")
            raise DatabaseError("Failed to credit wallet for cash-in")

        logger.info(f"Cash-in {payment.id} credited {amount} to vendor wallet of {payment.user_id}")
        await self.ledger.invalidate_wallet_cache(payment.user_id)
        return await self._reload(payment.id)

    async def process_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[Payment]:
        """
        Process a gateway webhook event

        Args:
            raw_body: Raw request body, verified before parsing
            signature: Paymongo-Signature header

        Returns:
            Reconciled payment, or None when the event matches no payment

        Raises:
            InvalidSignatureError: If signature verification fails
            ValidationError: If the body is not valid JSON
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid webhook payload")

        event = (payload.get("data") or {}).get("attributes") or {}
        event_type = event.get("type")
        resource = event.get("data") or {}
        resource_id = resource.get("id")
        attributes = resource.get("attributes") or {}
        payment_intent_id = attributes.get("payment_intent_id") or (attributes.get("payment_intent") or {}).get("id")

        logger.info(f"Processing webhook: type={event_type} intent={payment_intent_id} resource={resource_id}")

        payment = None
        if payment_intent_id:
            payment = await self._find_by_intent(payment_intent_id)
        if not payment and resource_id:
            payment = await self._find_by_charge(resource_id)
        if not payment and isinstance(resource_id, str) and resource_id.startswith("pi_"):
            payment = await self._find_by_intent(resource_id)

        if not payment:
            logger.warning(f"Payment not found for webhook: intent={payment_intent_id} resource={resource_id}")
            return None

        values: Dict[str, Any] = {"webhook_received": True, "webhook_data": payload}
        if not payment.payment_intent_id and payment_intent_id:
            values["payment_intent_id"] = payment_intent_id
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        payment = await self._reload(payment.id)

        charge_id = resource_id if isinstance(resource_id, str) and resource_id.startswith("pay_") else None
        if event_type == "payment.paid":
            payment = await self.apply_gateway_status(payment, "paid", payload, charge_id=charge_id)
        elif event_type == "payment.failed":
            error = attributes.get("last_payment_error") or {}
            reason = error.get("message") if isinstance(error, dict) else None
            payment = await self.apply_gateway_status(payment, "failed", payload, failure_reason=reason)
        elif event_type == "payment.refunded":
            payment = await self._mark_refunded(payment, payload)
        else:
            logger.info(f"Unhandled webhook event type: {event_type}")

        logger.info(f"Webhook processed: payment={payment.id} type={event_type}")
        return payment

    async def _mark_refunded(self, payment: Payment, payload: Dict[str, Any]) -> Payment:
        if not self.state_machine.can_transition(payment.status, PaymentStatus.REFUNDED, payment.type):
            logger.info(f"Refund event ignored for payment {payment.id} in status {payment.status.value}")
            return payment
        now = utcnow()
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(REFUNDABLE_STATUSES))
            .values(
                status=PaymentStatus.REFUNDED,
                is_final=True,
                refunded_amount=Payment.amount,
                refunded_at=now,
                updated_at=now,
                gateway_response=payload,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.info(f"Payment {payment.id} marked refunded by gateway")
        return await self._reload(payment.id)

    # ==================== Refunds, recovery, cancellation ====================

    async def create_refund(
        self,
        user_id: uuid.UUID,
        payment_id: uuid.UUID,
        amount: Optional[int] = None,
        reason: str = "requested_by_customer",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Refund all or part of a succeeded checkout payment

        The refunded amount is reserved on the original payment before the
        gateway is called and released if the gateway call fails.

        Args:
            user_id: Actor requesting the refund
            payment_id: Original checkout payment
            amount: Centavos to refund, defaults to the unrefunded remainder
            reason: Gateway reason code or free text
            metadata: Extra refund metadata

        Returns:
            Refund payment record

        Raises:
            NotFoundError: If payment not found
            ValidationError: If payment is not refundable or amount exceeds the remainder
            ExternalServiceError: If the gateway refund fails
        """
        original = await self._reload(payment_id)
        if not original:
            raise NotFoundError("Payment not found")
        if original.type != PaymentType.CHECKOUT:
            raise ValidationError("Only checkout payments can be refunded")
        if original.status not in REFUNDABLE_STATUSES:
            raise ValidationError("Only succeeded payments can be refunded")

        remaining = original.amount - (original.refunded_amount or 0)
        refund_amount = remaining if amount is None else self._validate_amount(amount, minimum=1)
        if refund_amount <= 0 or refund_amount > remaining:
            raise ValidationError("Total refund amount would exceed original payment")

        charge_id = original.charge_id or extract_charge_id(original.gateway_response or {})
        if not charge_id and original.payment_intent_id:
            intent = await self.gateway.retrieve_payment_intent(original.payment_intent_id)
            charge_id = extract_charge_id(intent)
        if not charge_id:
            raise ValidationError("Original payment does not have a gateway payment ID")

        # Reserve the amount so concurrent refunds cannot exceed the original
        reserved = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == original.id,
                Payment.status.in_(REFUNDABLE_STATUSES),
                Payment.refunded_amount + refund_amount <= Payment.amount,
            )
            .values(refunded_amount=Payment.refunded_amount + refund_amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if reserved.rowcount != 1:
            await self.db.rollback()
            raise ValidationError("Total refund amount would exceed original payment")

        refund_metadata = {
            **(metadata or {}),
            "original_payment_id": str(original.id),
            "refund_reason": reason,
            "refund_amount": str(refund_amount),
            "requested_by": str(user_id),
        }
        refund = Payment(
            id=uuid.uuid4(),
            user_id=original.user_id,
            parent_payment_id=original.id,
            type=PaymentType.REFUND,
            provider=original.provider,
            payment_method=original.payment_method,
            amount=refund_amount,
            fee=0,
            currency=original.currency,
            description=f"Refund for payment {original.id}",
            status=PaymentStatus.PENDING,
            payment_metadata=refund_metadata,
        )
        self.db.add(refund)
        await self.db.commit()

        try:
            result = await self.gateway.create_refund(charge_id, refund_amount, reason, refund_metadata)
        except SettlementException as e:
            await self._release_refund(original.id, refund, refund_amount, e.detail)
            raise

        refund.refund_id = (result.get("data") or {}).get("id")
        refund.gateway_response = result
        refund.status = PaymentStatus.PROCESSING
        await self.db.commit()

        refreshed = await self._reload(original.id)
        fully_refunded = refreshed.refunded_amount >= refreshed.amount
        target = PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED
        now = utcnow()
        values: Dict[str, Any] = {"status": target, "updated_at": now}
        if fully_refunded:
            values.update(is_final=True, refunded_at=now)
        await self.db.execute(
            update(Payment)
            .where(Payment.id == original.id, Payment.status.in_(REFUNDABLE_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            f"Refund created: refund={refund.id} original={original.id} amount={refund_amount} "
            f"gateway_refund={refund.refund_id}"
        )
        return refund

    async def _release_refund(
        self,
        original_id: uuid.UUID,
        refund: Payment,
        refund_amount: int,
        reason: str,
    ) -> None:
        now = utcnow()
        await self.db.execute(
            update(Payment)
            .where(Payment.id == original_id)
            .values(refunded_amount=Payment.refunded_amount - refund_amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        refund.status = PaymentStatus.FAILED
        refund.is_final = True
        refund.failed_at = now
        refund.failure_reason = reason
        await self.db.commit()
        logger.error(f"Gateway refund failed for payment {original_id}: {reason}")

    async def recover_orders_for_payment(self, payment_id: uuid.UUID) -> Dict[str, Any]:
        """
        Admin recovery: create missing orders for a succeeded pay-first payment

        Only vendor groups without an order are retried.

        Raises:
            NotFoundError: If payment not found
            ValidationError: If payment has not succeeded or has no checkout data
            ConflictError: If all orders already exist
        """
        payment = await self._reload(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.SUCCEEDED:
            raise ValidationError("Payment has not succeeded yet")
        if not payment.checkout_data or not (payment.checkout_data.get("items") or []):
            raise ValidationError("No checkout data found in payment")
        if payment.orders_created and not payment.orders_partial:
            raise ConflictError("Orders have already been created for this payment")

        order_ids = await self.materializer.materialize(payment.id, retry_failed=True)
        refreshed = await self._reload(payment.id)
        return {
            "success": True,
            "order_ids": order_ids,
            "orders_partial": refreshed.orders_partial,
            "message": f"{len(order_ids)} order(s) created successfully",
        }

    async def cancel_payment(
        self,
        user_id: uuid.UUID,
        payment_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Cancel an unpaid payment owned by the user

        Raises:
            NotFoundError: If payment not found
            ForbiddenError: If payment belongs to someone else
            ValidationError: If payment is a withdrawal or can no longer be cancelled
        """
        payment = await self.get_payment(payment_id, actor_id=user_id)
        if payment.type in (PaymentType.WITHDRAW, PaymentType.REFUND):
            raise ValidationError(f"{payment.type.value} payments cannot be cancelled here")
        if payment.status not in CANCELLABLE_STATUSES:
            raise ValidationError(f"Payment in status {payment.status.value} cannot be cancelled")

        now = utcnow()
        result = await self.db.execute(
            update(Payment)
            .where(
                and_(Payment.id == payment.id, Payment.status.in_(CANCELLABLE_STATUSES)),
            )
            .values(
                status=PaymentStatus.CANCELLED,
                is_final=True,
                cancelled_at=now,
                failure_reason=reason or "Cancelled by user",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            raise ConflictError("Payment status changed, try again")

        logger.info(f"Payment {payment.id} cancelled by {user_id}")
        return await self._reload(payment.id)
