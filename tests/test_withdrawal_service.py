# tests/test_withdrawal_service.py
"""
Tests for vendor withdrawals.

A payout request debits the wallet in the same transaction that records the
withdrawal; rejection and cancellation credit it back exactly once, so the
wallet nets to zero.
"""
import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from app.api.v1.wallet.services import WithdrawalService, withdrawal_key
from app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from app.models import (
    Payment,
    PaymentStatus,
    PaymentType,
    WalletOwnerType,
    WalletTransaction,
    ReferenceType,
)
from app.services.ledger_service import LedgerService

GCASH = {"account_number": "0917 123 4567", "account_name": "Juan Dela Cruz"}


@pytest.fixture
def service(db, cache, notifier):
    return WithdrawalService(db, cache=cache, notifier=notifier)


@pytest.fixture
async def funded_vendor(vendor_id, fund_wallet):
    await fund_wallet(vendor_id, 1000)
    return vendor_id


async def _reversals(db):
    return await db.scalar(
        select(func.count(WalletTransaction.id)).where(
            WalletTransaction.reference_type == ReferenceType.WITHDRAWAL_REVERSAL
        )
    )


# =============================================================================
# CREATION
# =============================================================================

class TestCreateWithdrawal:
    """Payout requests and their up-front debit."""

    async def test_debits_wallet_and_records_pending(self, db, service, notifier, funded_vendor, wallet_balance):
        payment = await service.create_withdrawal(funded_vendor, 50000, GCASH, idempotency_key="wd-1")

        assert payment.type == PaymentType.WITHDRAW
        assert payment.status == PaymentStatus.PENDING
        assert payment.fee == 500
        assert payment.net_amount == 49500
        assert payment.bank_account == {
            "account_number": "09171234567",
            "account_name": "Juan Dela Cruz",
            "bank_name": "gcash",
        }
        assert await wallet_balance(funded_vendor) == Decimal("500.00")

        txn = await db.get(WalletTransaction, uuid.UUID(payment.payment_metadata["wallet_transaction_id"]))
        assert txn.reference == f"WITHDRAWAL-{payment.id}"
        assert txn.reference_type == ReferenceType.WITHDRAWAL
        assert notifier.alerts and "₱500.00" in notifier.alerts[0][0]

    async def test_over_balance_creates_nothing(self, db, service, vendor_id, fund_wallet, wallet_balance):
        await fund_wallet(vendor_id, 100)

        with pytest.raises(InsufficientBalanceError):
            await service.create_withdrawal(vendor_id, 50000, GCASH)

        assert await db.scalar(select(func.count(Payment.id))) == 0
        assert await wallet_balance(vendor_id) == Decimal("100.00")

    async def test_minimum_amount(self, service, funded_vendor):
        with pytest.raises(ValidationError, match="Minimum withdrawal amount is ₱100.00"):
            await service.create_withdrawal(funded_vendor, 9999, GCASH)

    @pytest.mark.parametrize("method, account", [
        ("bank", GCASH),
        ("gcash", {"account_number": "12345", "account_name": "Juan"}),
        ("gcash", {"account_number": "09171234567", "account_name": "J"}),
        ("gcash", {**GCASH, "bank_name": "paymaya"}),
        ("gcash", None),
    ])
    async def test_invalid_destination(self, service, funded_vendor, method, account):
        with pytest.raises(ValidationError):
            await service.create_withdrawal(funded_vendor, 50000, account, payout_method=method)

    async def test_replay_with_same_key(self, db, service, funded_vendor, wallet_balance):
        first = await service.create_withdrawal(funded_vendor, 50000, GCASH, idempotency_key="wd-1")
        second = await service.create_withdrawal(funded_vendor, 50000, GCASH, idempotency_key="wd-1")

        assert first.id == second.id
        assert await wallet_balance(funded_vendor) == Decimal("500.00")

    async def test_derived_key_deduplicates_identical_requests(self, db, service, funded_vendor):
        first = await service.create_withdrawal(funded_vendor, 20000, GCASH)
        second = await service.create_withdrawal(funded_vendor, 20000, dict(GCASH))

        assert first.id == second.id
        assert first.idempotency_key == withdrawal_key(
            funded_vendor, 20000, "gcash",
            {"account_number": "09171234567", "account_name": "Juan Dela Cruz", "bank_name": "gcash"},
        )
        assert await db.scalar(select(func.count(Payment.id))) == 1


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:
    """Approve, reject and cancel."""

    async def test_approve_keeps_debit(self, service, funded_vendor, admin_id, wallet_balance):
        payment = await service.create_withdrawal(funded_vendor, 50000, GCASH)

        approved = await service.approve_withdrawal(
            admin_id, payment.id, admin_proof_url="https://proof/1.png", payout_reference="GC-123"
        )

        assert approved.status == PaymentStatus.SUCCEEDED
        assert approved.is_final is True
        assert approved.approved_by == admin_id
        assert approved.payout_reference == "GC-123"
        assert await wallet_balance(funded_vendor) == Decimal("500.00")

    async def test_reject_nets_to_zero(self, db, service, funded_vendor, admin_id, wallet_balance):
        payment = await service.create_withdrawal(funded_vendor, 50000, GCASH)

        rejected = await service.reject_withdrawal(admin_id, payment.id, reason="Name mismatch")

        assert rejected.status == PaymentStatus.REJECTED
        assert rejected.rejection_reason == "Name mismatch"
        assert rejected.rejected_by == admin_id
        assert await wallet_balance(funded_vendor) == Decimal("1000.00")
        wallet = await LedgerService(db).get_wallet(funded_vendor, WalletOwnerType.VENDOR)
        report = await LedgerService(db).verify_balance(wallet.id)
        assert report["consistent"] is True

        with pytest.raises(ValidationError):
            await service.reject_withdrawal(admin_id, payment.id)
        assert await _reversals(db) == 1

    async def test_vendor_cancel(self, db, service, funded_vendor, wallet_balance):
        payment = await service.create_withdrawal(funded_vendor, 50000, GCASH)

        cancelled = await service.cancel_withdrawal(funded_vendor, payment.id)

        assert cancelled.status == PaymentStatus.CANCELLED
        assert cancelled.failure_reason == "Cancelled by vendor"
        assert cancelled.cancelled_at is not None
        assert await wallet_balance(funded_vendor) == Decimal("1000.00")

    async def test_cancel_rules(self, service, funded_vendor, admin_id):
        payment = await service.create_withdrawal(funded_vendor, 50000, GCASH)

        with pytest.raises(ForbiddenError):
            await service.cancel_withdrawal(uuid.uuid4(), payment.id)

        await service.approve_withdrawal(admin_id, payment.id)
        with pytest.raises(ValidationError, match="Only pending withdrawals can be cancelled"):
            await service.cancel_withdrawal(funded_vendor, payment.id)

    async def test_unknown_or_non_withdrawal(self, db, service, vendor_id, admin_id):
        with pytest.raises(NotFoundError):
            await service.approve_withdrawal(admin_id, uuid.uuid4())

        other = Payment(user_id=vendor_id, type=PaymentType.CASH_IN, amount=10000, status=PaymentStatus.PENDING)
        db.add(other)
        await db.commit()
        with pytest.raises(ValidationError, match="not a withdrawal"):
            await service.reject_withdrawal(admin_id, other.id)

    async def test_status_update_routing(self, service, funded_vendor, admin_id, wallet_balance):
        first = await service.create_withdrawal(funded_vendor, 20000, GCASH, idempotency_key="a")
        second = await service.create_withdrawal(funded_vendor, 30000, GCASH, idempotency_key="b")

        processing = await service.update_withdrawal_status(admin_id, first.id, "processing")
        assert processing.status == PaymentStatus.PROCESSING
        done = await service.update_withdrawal_status(admin_id, first.id, "succeeded", payout_reference="GC-9")
        assert done.status == PaymentStatus.SUCCEEDED
        assert done.payout_reference == "GC-9"

        failed = await service.update_withdrawal_status(admin_id, second.id, "failed", reason="Wallet closed")
        assert failed.status == PaymentStatus.REJECTED
        assert failed.rejection_reason == "Wallet closed"
        assert await wallet_balance(funded_vendor) == Decimal("800.00")

        with pytest.raises(ValidationError):
            await service.update_withdrawal_status(admin_id, first.id, "nonsense")

    async def test_concurrent_reject_and_cancel_credit_once(
        self, db, other_db, cache, funded_vendor, admin_id, wallet_balance
    ):
        payment = await WithdrawalService(db, cache=cache).create_withdrawal(funded_vendor, 50000, GCASH)

        async def run(coro_factory, session):
            try:
                await coro_factory()
                return "ok"
            except (ConflictError, ValidationError) as e:
                return type(e).__name__
            finally:
                await session.commit()

        outcomes = await asyncio.gather(
            run(lambda: WithdrawalService(db, cache=cache).reject_withdrawal(admin_id, payment.id), db),
            run(lambda: WithdrawalService(other_db, cache=cache).cancel_withdrawal(funded_vendor, payment.id), other_db),
        )

        assert outcomes.count("ok") == 1
        assert await wallet_balance(funded_vendor) == Decimal("1000.00")
        assert await _reversals(db) == 1


# =============================================================================
# LISTINGS
# =============================================================================

class TestListings:
    """Vendor history and the admin queue."""

    async def test_vendor_listing_refreshes_after_change(self, service, funded_vendor):
        first = await service.create_withdrawal(funded_vendor, 20000, GCASH, idempotency_key="a")
        listing = await service.get_vendor_withdrawals(funded_vendor)
        assert listing["total_withdrawals"] == 1
        assert listing["withdrawals"][0]["status"] == "pending"

        await service.cancel_withdrawal(funded_vendor, first.id)
        await service.create_withdrawal(funded_vendor, 30000, GCASH, idempotency_key="b")
        listing = await service.get_vendor_withdrawals(funded_vendor)

        assert listing["total_withdrawals"] == 2
        assert listing["total_pages"] == 1
        assert listing["has_next_page"] is False
        cancelled = await service.get_vendor_withdrawals(funded_vendor, status=PaymentStatus.CANCELLED)
        assert [w["id"] for w in cancelled["withdrawals"]] == [str(first.id)]

    async def test_admin_queue_filters(self, service, funded_vendor, fund_wallet, admin_id):
        other_vendor = uuid.uuid4()
        await fund_wallet(other_vendor, 500)
        mine = await service.create_withdrawal(funded_vendor, 20000, GCASH)
        await service.create_withdrawal(
            other_vendor, 20000, {"account_number": "09998887777", "account_name": "Maria Clara"},
            payout_method="paymaya",
        )
        await service.approve_withdrawal(admin_id, mine.id, payout_reference="GC-REF-42")

        everything = await service.get_withdrawals_for_admin()
        by_vendor = await service.get_withdrawals_for_admin(vendor_id=other_vendor)
        by_status = await service.get_withdrawals_for_admin(status=PaymentStatus.SUCCEEDED)
        by_reference = await service.get_withdrawals_for_admin(q="ref-42")
        by_account = await service.get_withdrawals_for_admin(q="maria")

        assert everything["total_docs"] == 2
        assert everything["total_pages"] == 1
        assert by_vendor["docs"][0]["user_id"] == str(other_vendor)
        assert [d["id"] for d in by_status["docs"]] == [str(mine.id)]
        assert [d["id"] for d in by_reference["docs"]] == [str(mine.id)]
        assert by_account["total_docs"] == 1
        assert by_account["docs"][0]["payment_method"] == "paymaya"
