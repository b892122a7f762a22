# tests/test_payment_service.py
"""
Tests for the payment lifecycle.

Covers creation (fees, zero-amount settlement, gateway failure), webhook and
polling reconciliation converging on one outcome, exactly-once wallet
credits for cash-ins, refunds and cancellation.
"""
import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from app.api.v1.payments.services import PaymentService
from app.core.exceptions import (
    ConflictError,
    ExternalServiceError,
    ForbiddenError,
    InvalidSignatureError,
    NotFoundError,
    ValidationError,
)
from app.models import (
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    PaymentType,
    WalletTransaction,
    ReferenceType,
)

from .conftest import checkout_snapshot, webhook_body


@pytest.fixture
def service(db, gateway, cache, notifier):
    return PaymentService(db, gateway, cache=cache, notifier=notifier)


@pytest.fixture
def make_order(db, vendor_id):
    """Persist an unpaid order for a buyer."""

    async def _make(buyer_id, total="100.00"):
        order = Order(
            id=uuid.uuid4(),
            order_number=f"ORD-{uuid.uuid4().hex[:10]}",
            buyer_id=buyer_id,
            vendor_id=vendor_id,
            subtotal=Decimal(total),
            total_amount=Decimal(total),
            payment_method="paymongo",
        )
        db.add(order)
        await db.commit()
        return order

    return _make


async def _paid_checkout(service, gateway, make_order, buyer_id, amount=10000):
    order = await make_order(buyer_id)
    created = await service.create_checkout_payment(buyer_id, order.id, amount, "Order payment")
    gateway.mark_paid(created["payment_intent_id"])
    payment = await service.check_payment_status(created["payment_intent_id"])
    assert payment.status == PaymentStatus.SUCCEEDED
    return payment


async def _cash_in_transactions(db):
    return await db.scalar(
        select(func.count(WalletTransaction.id)).where(
            WalletTransaction.reference_type == ReferenceType.CASH_IN
        )
    )


# =============================================================================
# CHECKOUT FOR AN EXISTING ORDER
# =============================================================================

class TestCheckoutPayment:
    """Payments attached to an order that already exists."""

    async def test_creates_intent(self, service, gateway, make_order, buyer_id):
        order = await make_order(buyer_id)

        result = await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")

        payment = result["payment"]
        assert payment.status == PaymentStatus.AWAITING_PAYMENT
        assert payment.type == PaymentType.CHECKOUT
        assert result["payment_intent_id"].startswith("pi_")
        assert result["client_key"] == f"{result['payment_intent_id']}_client"
        intent = gateway.intents[result["payment_intent_id"]]
        assert intent["metadata"]["order_id"] == str(order.id)
        assert intent["idempotency_key"] == payment.gateway_idempotency_key

    async def test_zero_amount_settles_without_gateway(self, db, service, gateway, make_order, buyer_id):
        order = await make_order(buyer_id, total="0.00")

        result = await service.create_checkout_payment(buyer_id, order.id, 0, "Free order")

        payment = result["payment"]
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.provider == PaymentProvider.MANUAL
        assert payment.is_final is True
        assert gateway.calls == []
        refreshed = await db.get(Order, order.id, populate_existing=True)
        assert refreshed.payment_status == OrderPaymentStatus.PAID
        assert refreshed.status == OrderStatus.PAID
        assert refreshed.payment_id == payment.id

    async def test_gateway_failure_leaves_pending_row(self, db, service, gateway, make_order, buyer_id):
        order = await make_order(buyer_id)
        gateway.fail_on.add("create_payment_intent")

        with pytest.raises(ExternalServiceError):
            await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")

        rows = (await db.execute(select(Payment).where(Payment.order_id == order.id))).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == PaymentStatus.PENDING
        assert rows[0].payment_intent_id is None

    async def test_retry_reuses_checkout_row(self, db, service, gateway, make_order, buyer_id):
        order = await make_order(buyer_id)
        gateway.fail_on.add("create_payment_intent")
        with pytest.raises(ExternalServiceError):
            await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")
        gateway.fail_on.clear()

        result = await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")

        count = await db.scalar(select(func.count(Payment.id)).where(Payment.order_id == order.id))
        assert count == 1
        assert result["payment"].status == PaymentStatus.AWAITING_PAYMENT

    async def test_second_request_returns_open_intent(self, db, service, gateway, make_order, buyer_id):
        order = await make_order(buyer_id)

        first = await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")
        second = await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")

        assert second["payment_intent_id"] == first["payment_intent_id"]
        assert second["client_key"] == first["client_key"]
        assert gateway.calls.count("create_payment_intent") == 1

        charge_id = gateway.mark_paid(first["payment_intent_id"])
        body = webhook_body("payment.paid", first["payment_intent_id"], charge_id=charge_id)
        payment = await service.process_webhook(body, gateway.sign(body))

        assert payment.id == first["payment"].id
        assert payment.status == PaymentStatus.SUCCEEDED
        refreshed = await db.get(Order, order.id, populate_existing=True)
        assert refreshed.payment_status == OrderPaymentStatus.PAID

    async def test_open_intent_for_other_amount_conflicts(self, service, gateway, make_order, buyer_id):
        order = await make_order(buyer_id)
        await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")

        with pytest.raises(ConflictError, match="different amount"):
            await service.create_checkout_payment(buyer_id, order.id, 12000, "Order payment")
        assert gateway.calls.count("create_payment_intent") == 1

    async def test_order_of_another_buyer_rejected(self, service, make_order, buyer_id):
        order = await make_order(buyer_id)
        with pytest.raises(ValidationError, match="does not belong"):
            await service.create_checkout_payment(uuid.uuid4(), order.id, 10000, "Order payment")

    async def test_unknown_order(self, service, buyer_id):
        with pytest.raises(NotFoundError):
            await service.create_checkout_payment(buyer_id, uuid.uuid4(), 10000, "Order payment")

    async def test_paid_order_cannot_be_paid_again(self, service, make_order, buyer_id):
        order = await make_order(buyer_id, total="0.00")
        await service.create_checkout_payment(buyer_id, order.id, 0, "Free order")

        with pytest.raises(ConflictError, match="already been paid"):
            await service.create_checkout_payment(buyer_id, order.id, 0, "Free order")

    @pytest.mark.parametrize("amount", [-1, 10.5, "100", True])
    async def test_amount_must_be_non_negative_integer(self, service, make_order, buyer_id, amount):
        order = await make_order(buyer_id)
        with pytest.raises(ValidationError):
            await service.create_checkout_payment(buyer_id, order.id, amount, "Order payment")


# =============================================================================
# PAY-FIRST QR PH
# =============================================================================

class TestQrphPayment:
    """Cart snapshot payments that create orders once paid."""

    async def test_fee_and_qr_code(self, service, gateway, buyer_id, vendor_id):
        result = await service.create_qrph_payment(
            buyer_id, 10000, "Cart checkout", checkout_data=checkout_snapshot([vendor_id])
        )

        payment = result["payment"]
        assert payment.fee == 250
        assert payment.net_amount == 9750
        assert payment.status == PaymentStatus.AWAITING_PAYMENT
        assert result["qr_code_url"].endswith(".png")
        assert payment.checkout_data["items"][0]["vendor_id"] == str(vendor_id)
        assert gateway.calls == ["create_payment_intent", "create_payment_method", "attach_payment_method"]

    async def test_invalid_snapshot_rejected_before_any_write(self, db, service, gateway, buyer_id):
        with pytest.raises(ValidationError):
            await service.create_qrph_payment(buyer_id, 10000, "Cart checkout", checkout_data={"items": []})

        assert gateway.calls == []
        assert await db.scalar(select(func.count(Payment.id))) == 0

    async def test_item_without_vendor_rejected(self, service, buyer_id, vendor_id):
        snapshot = checkout_snapshot([vendor_id])
        snapshot["items"][0]["vendor_id"] = None
        with pytest.raises(ValidationError, match="vendor_id"):
            await service.create_qrph_payment(buyer_id, 10000, "Cart checkout", checkout_data=snapshot)

    async def test_success_creates_one_order_per_vendor(self, db, service, gateway, buyer_id):
        vendors = [uuid.uuid4(), uuid.uuid4()]
        result = await service.create_qrph_payment(
            buyer_id, 60000, "Cart checkout", checkout_data=checkout_snapshot(vendors)
        )
        gateway.mark_paid(result["payment_intent_id"])

        payment = await service.check_payment_status(str(result["payment"].id))

        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.orders_created is True
        assert len(payment.order_ids) == 2
        orders = (await db.execute(select(Order))).scalars().all()
        assert {o.vendor_id for o in orders} == set(vendors)
        assert all(o.payment_id == payment.id for o in orders)


# =============================================================================
# CASH-IN
# =============================================================================

class TestCashIn:
    """Vendor wallet top-ups."""

    async def test_fee(self, service, vendor_id):
        result = await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")

        payment = result["payment"]
        assert payment.type == PaymentType.CASH_IN
        assert payment.fee == 150
        assert payment.net_amount == 9850
        assert payment.idempotency_key == "topup-1"

    async def test_replay_returns_same_payment(self, db, service, gateway, vendor_id):
        first = await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")
        second = await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")

        assert first["payment"].id == second["payment"].id
        assert gateway.calls.count("create_payment_intent") == 1
        assert await db.scalar(select(func.count(Payment.id))) == 1

    async def test_retry_after_gateway_failure_completes_same_row(self, db, service, gateway, vendor_id):
        gateway.fail_on.add("attach_payment_method")
        with pytest.raises(ExternalServiceError):
            await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")
        gateway.fail_on.clear()

        result = await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")

        assert result["payment"].status == PaymentStatus.AWAITING_PAYMENT
        assert await db.scalar(select(func.count(Payment.id))) == 1

    async def test_only_qrph(self, service, vendor_id):
        with pytest.raises(ValidationError, match="QRPH"):
            await service.create_cash_in(vendor_id, 10000, payment_method="card")

    async def test_minimum(self, service, vendor_id):
        with pytest.raises(ValidationError, match="Minimum"):
            await service.create_cash_in(vendor_id, 50)


# =============================================================================
# RECONCILIATION
# =============================================================================

class TestReconciliation:
    """Webhook and polling apply the same transitions and effects."""

    async def test_poll_credits_wallet_once(self, db, service, gateway, vendor_id, wallet_balance):
        created = await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")
        intent_id = created["payment_intent_id"]
        charge_id = gateway.mark_paid(intent_id)

        first = await service.check_payment_status(intent_id)
        second = await service.check_payment_status(intent_id)

        assert first.status == second.status == PaymentStatus.SUCCEEDED
        assert second.wallet_credited is True
        assert second.charge_id == charge_id
        assert await wallet_balance(vendor_id) == Decimal("98.50")
        assert await _cash_in_transactions(db) == 1

    async def test_webhook_then_poll_converge(self, db, service, gateway, vendor_id, wallet_balance):
        created = await service.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")
        intent_id = created["payment_intent_id"]
        charge_id = gateway.mark_paid(intent_id)
        body = webhook_body("payment.paid", intent_id, charge_id=charge_id)

        hooked = await service.process_webhook(body, gateway.sign(body))
        polled = await service.check_payment_status(intent_id)
        replayed = await service.process_webhook(body, gateway.sign(body))

        assert hooked.status == polled.status == replayed.status == PaymentStatus.SUCCEEDED
        assert polled.webhook_received is True
        assert await wallet_balance(vendor_id) == Decimal("98.50")
        assert await _cash_in_transactions(db) == 1

    async def test_concurrent_webhook_and_poll_credit_once(
        self, db, other_db, gateway, cache, vendor_id, wallet_balance
    ):
        first = PaymentService(db, gateway, cache=cache)
        second = PaymentService(other_db, gateway, cache=cache)
        created = await first.create_cash_in(vendor_id, 10000, idempotency_key="topup-1")
        intent_id = created["payment_intent_id"]
        charge_id = gateway.mark_paid(intent_id)
        body = webhook_body("payment.paid", intent_id, charge_id=charge_id)

        async def via_webhook():
            await first.process_webhook(body, gateway.sign(body))
            await db.commit()

        async def via_poll():
            await second.check_payment_status(intent_id)
            await other_db.commit()

        await asyncio.gather(via_webhook(), via_poll())

        assert await wallet_balance(vendor_id) == Decimal("98.50")
        assert await _cash_in_transactions(db) == 1

    async def test_failed_webhook(self, service, gateway, buyer_id, vendor_id):
        created = await service.create_qrph_payment(
            buyer_id, 10000, "Cart checkout", checkout_data=checkout_snapshot([vendor_id])
        )
        body = webhook_body("payment.failed", created["payment_intent_id"], error="Insufficient funds")

        payment = await service.process_webhook(body, gateway.sign(body))

        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Insufficient funds"
        assert payment.is_final is True

    async def test_late_failure_does_not_undo_success(self, service, gateway, vendor_id):
        created = await service.create_cash_in(vendor_id, 10000)
        intent_id = created["payment_intent_id"]
        gateway.mark_paid(intent_id)
        await service.check_payment_status(intent_id)
        body = webhook_body("payment.failed", intent_id, error="late")

        payment = await service.process_webhook(body, gateway.sign(body))

        assert payment.status == PaymentStatus.SUCCEEDED

    async def test_invalid_signature_rejected(self, service, gateway, vendor_id):
        created = await service.create_cash_in(vendor_id, 10000)
        body = webhook_body("payment.paid", created["payment_intent_id"])

        with pytest.raises(InvalidSignatureError):
            await service.process_webhook(body, gateway.sign(b"something else"))
        with pytest.raises(InvalidSignatureError):
            await service.process_webhook(body, None)

    async def test_unknown_intent_acknowledged(self, service, gateway):
        body = webhook_body("payment.paid", "pi_unknown")
        assert await service.process_webhook(body, gateway.sign(body)) is None

    async def test_malformed_identifier(self, service):
        with pytest.raises(ValidationError, match="Invalid payment identifier"):
            await service.check_payment_status("not-an-id")

    async def test_refunded_webhook(self, service, gateway, make_order, buyer_id):
        payment = await _paid_checkout(service, gateway, make_order, buyer_id)
        body = webhook_body("payment.refunded", payment.payment_intent_id)

        refunded = await service.process_webhook(body, gateway.sign(body))

        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.refunded_amount == refunded.amount


# =============================================================================
# REFUNDS
# =============================================================================

class TestRefunds:
    """Partial and full refunds of a succeeded checkout."""

    async def test_partial_then_remaining(self, service, gateway, make_order, buyer_id, admin_id):
        payment = await _paid_checkout(service, gateway, make_order, buyer_id)

        partial = await service.create_refund(admin_id, payment.id, amount=4000)
        original = await service.get_payment(payment.id)
        assert partial.type == PaymentType.REFUND
        assert partial.status == PaymentStatus.PROCESSING
        assert partial.parent_payment_id == payment.id
        assert original.status == PaymentStatus.PARTIALLY_REFUNDED
        assert original.refunded_amount == 4000
        assert gateway.refunds[0] == {
            "payment_id": payment.charge_id, "amount": 4000, "reason": "requested_by_customer"
        }

        rest = await service.create_refund(admin_id, payment.id)
        original = await service.get_payment(payment.id)
        assert rest.amount == 6000
        assert original.status == PaymentStatus.REFUNDED
        assert original.is_final is True

    async def test_cannot_exceed_original(self, service, gateway, make_order, buyer_id, admin_id):
        payment = await _paid_checkout(service, gateway, make_order, buyer_id)
        await service.create_refund(admin_id, payment.id, amount=7000)

        with pytest.raises(ValidationError, match="exceed"):
            await service.create_refund(admin_id, payment.id, amount=3001)

    async def test_gateway_failure_releases_reservation(
        self, db, service, gateway, make_order, buyer_id, admin_id
    ):
        payment = await _paid_checkout(service, gateway, make_order, buyer_id)
        gateway.fail_on.add("create_refund")

        with pytest.raises(ExternalServiceError):
            await service.create_refund(admin_id, payment.id, amount=4000)

        original = await service.get_payment(payment.id)
        assert original.refunded_amount == 0
        assert original.status == PaymentStatus.SUCCEEDED
        refund = (
            await db.execute(select(Payment).where(Payment.type == PaymentType.REFUND))
        ).scalar_one()
        assert refund.status == PaymentStatus.FAILED

    async def test_unpaid_payment_not_refundable(self, service, make_order, buyer_id, admin_id):
        order = await make_order(buyer_id)
        created = await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")

        with pytest.raises(ValidationError, match="succeeded"):
            await service.create_refund(admin_id, created["payment"].id)


# =============================================================================
# CANCELLATION
# =============================================================================

class TestCancelPayment:
    """Customers may abandon unpaid payments."""

    async def test_cancel_awaiting_payment(self, service, vendor_id):
        created = await service.create_cash_in(vendor_id, 10000)

        payment = await service.cancel_payment(vendor_id, created["payment"].id, "Changed my mind")

        assert payment.status == PaymentStatus.CANCELLED
        assert payment.failure_reason == "Changed my mind"
        assert payment.cancelled_at is not None

    async def test_cancel_other_users_payment(self, service, vendor_id):
        created = await service.create_cash_in(vendor_id, 10000)
        with pytest.raises(ForbiddenError):
            await service.cancel_payment(uuid.uuid4(), created["payment"].id)

    async def test_cannot_cancel_succeeded(self, service, gateway, vendor_id):
        created = await service.create_cash_in(vendor_id, 10000)
        gateway.mark_paid(created["payment_intent_id"])
        await service.check_payment_status(created["payment_intent_id"])

        with pytest.raises(ValidationError, match="cannot be cancelled"):
            await service.cancel_payment(vendor_id, created["payment"].id)

    async def test_gateway_success_after_cancel_is_settled(
        self, db, service, gateway, notifier, vendor_id, wallet_balance
    ):
        created = await service.create_cash_in(vendor_id, 10000)
        intent_id = created["payment_intent_id"]
        await service.cancel_payment(vendor_id, created["payment"].id)

        charge_id = gateway.mark_paid(intent_id)
        body = webhook_body("payment.paid", intent_id, charge_id=charge_id)
        from_webhook = await service.process_webhook(body, gateway.sign(body))
        polled = await service.check_payment_status(intent_id)

        assert from_webhook.status == PaymentStatus.SUCCEEDED
        assert polled.status == PaymentStatus.SUCCEEDED
        assert polled.wallet_credited is True
        assert polled.failure_reason is None
        assert await wallet_balance(vendor_id) == Decimal("98.50")
        assert await _cash_in_transactions(db) == 1
        assert len(notifier.alerts) == 1
        assert "succeeded after cancellation" in notifier.alerts[0][0]

    async def test_checkout_paid_after_cancel_marks_order_paid(
        self, db, service, gateway, notifier, make_order, buyer_id
    ):
        order = await make_order(buyer_id)
        created = await service.create_checkout_payment(buyer_id, order.id, 10000, "Order payment")
        await service.cancel_payment(buyer_id, created["payment"].id)

        gateway.mark_paid(created["payment_intent_id"])
        payment = await service.check_payment_status(created["payment_intent_id"])

        assert payment.status == PaymentStatus.SUCCEEDED
        refreshed = await db.get(Order, order.id, populate_existing=True)
        assert refreshed.payment_status == OrderPaymentStatus.PAID
        assert len(notifier.alerts) == 1


# =============================================================================
# SUBSCRIPTIONS AND HISTORY
# =============================================================================

class TestSubscriptionPayment:
    """Seller plan payments through QR Ph."""

    async def test_creates_qr_payment_for_plan(self, service, gateway, vendor_id):
        result = await service.create_subscription_qrph_payment(vendor_id, vendor_id, "PRO_MONTHLY", 49900)

        payment = result["payment"]
        assert payment.type == PaymentType.SUBSCRIPTION
        assert payment.plan_code == "PRO_MONTHLY"
        assert payment.seller_id == vendor_id
        assert payment.fee == 1248
        assert payment.status == PaymentStatus.AWAITING_PAYMENT
        metadata = gateway.intents[result["payment_intent_id"]]["metadata"]
        assert metadata["plan_code"] == "PRO_MONTHLY"
        assert metadata["order_type"] == "subscription"

    async def test_plan_code_and_amount_required(self, service, vendor_id):
        with pytest.raises(ValidationError, match="Plan code"):
            await service.create_subscription_qrph_payment(vendor_id, vendor_id, "", 49900)
        with pytest.raises(ValidationError):
            await service.create_subscription_qrph_payment(vendor_id, vendor_id, "PRO_MONTHLY", 0)

    async def test_success_does_not_touch_wallet(self, db, service, gateway, vendor_id, wallet_balance):
        result = await service.create_subscription_qrph_payment(vendor_id, vendor_id, "PRO_MONTHLY", 49900)
        gateway.mark_paid(result["payment_intent_id"])

        payment = await service.check_payment_status(result["payment_intent_id"])

        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.wallet_credited is False
        assert await wallet_balance(vendor_id) == Decimal("0.00")


class TestPaymentHistory:
    def _types(self, payments):
        return [p.type for p in payments]

    async def test_filters_by_type(self, service, vendor_id):
        await service.create_cash_in(vendor_id, 10000, idempotency_key="a")
        await service.create_subscription_qrph_payment(vendor_id, vendor_id, "PRO_MONTHLY", 49900)

        everything = await service.get_user_payments(vendor_id)
        cash_ins = await service.get_user_payments(vendor_id, payment_type=PaymentType.CASH_IN)

        assert sorted(self._types(everything)) == sorted([PaymentType.CASH_IN, PaymentType.SUBSCRIPTION])
        assert self._types(cash_ins) == [PaymentType.CASH_IN]
        assert await service.get_user_payments(uuid.uuid4()) == []
