# tests/test_ledger_service.py
"""
Tests for the wallet ledger.

Every credit and debit must journal exactly one WalletTransaction whose
before/after balances agree with the stored balance, and debits must never
overdraw a wallet, even when two sessions race for the same funds.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, update, func

from app.core.exceptions import InsufficientBalanceError, ValidationError
from app.models import (
    Wallet,
    WalletTransaction,
    WalletOwnerType,
    TransactionDirection,
    ReferenceType,
)
from app.services.ledger_service import LedgerService


async def _journal(db, wallet_id):
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet_id)
        .order_by(WalletTransaction.created_at)
    )
    return list(result.scalars().all())


# =============================================================================
# CREDIT / DEBIT
# =============================================================================

class TestCreditDebit:
    """Single-session balance changes."""

    async def test_credit_creates_wallet_and_journals(self, db, vendor_id):
        ledger = LedgerService(db)
        txn = await ledger.credit(
            vendor_id, "250.50",
            reference="SEED-1", reference_type=ReferenceType.ADJUSTMENT,
            owner_type=WalletOwnerType.VENDOR,
        )
        await db.commit()

        wallet = await ledger.get_wallet(vendor_id, WalletOwnerType.VENDOR)
        assert wallet.balance == Decimal("250.50")
        assert txn.direction == TransactionDirection.CREDIT
        assert txn.balance_before == Decimal("0.00")
        assert txn.balance_after == Decimal("250.50")
        assert wallet.recent_transactions[0]["reference"] == "SEED-1"

    async def test_debit_reduces_balance(self, db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 100)
        ledger = LedgerService(db)

        txn = await ledger.debit(
            vendor_id, Decimal("40.25"),
            reference="COMM-1", reference_type=ReferenceType.COMMISSION,
            owner_type=WalletOwnerType.VENDOR,
        )
        await db.commit()

        assert txn.balance_before == Decimal("100.00")
        assert txn.balance_after == Decimal("59.75")
        wallet = await ledger.get_wallet(vendor_id, WalletOwnerType.VENDOR)
        assert wallet.balance == Decimal("59.75")

    async def test_overdraw_rejected_without_journal(self, db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 10)
        ledger = LedgerService(db)

        with pytest.raises(InsufficientBalanceError) as exc:
            await ledger.debit(
                vendor_id, 10.01,
                reference="COMM-2", reference_type=ReferenceType.COMMISSION,
                owner_type=WalletOwnerType.VENDOR,
            )
        await db.rollback()

        assert "Have: ₱10.00, Need: ₱10.01" in exc.value.detail
        wallet = await ledger.get_wallet(vendor_id, WalletOwnerType.VENDOR)
        assert wallet.balance == Decimal("10.00")
        assert len(await _journal(db, wallet.id)) == 1

    @pytest.mark.parametrize("amount", [0, -5, "0.001"])
    async def test_non_positive_amount_rejected(self, db, vendor_id, amount):
        ledger = LedgerService(db)
        with pytest.raises(ValidationError):
            await ledger.credit(
                vendor_id, amount,
                reference="BAD", reference_type=ReferenceType.ADJUSTMENT,
            )

    async def test_locked_wallet_cannot_be_debited(self, db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 100)
        await db.execute(update(Wallet).where(Wallet.owner_id == vendor_id).values(is_locked=True))
        await db.commit()

        with pytest.raises(InsufficientBalanceError, match="locked"):
            await LedgerService(db).debit(
                vendor_id, 1,
                reference="X", reference_type=ReferenceType.COMMISSION,
                owner_type=WalletOwnerType.VENDOR,
            )

    async def test_owner_types_have_separate_wallets(self, db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 30, owner_type=WalletOwnerType.VENDOR)
        await fund_wallet(vendor_id, 5, owner_type=WalletOwnerType.USER)

        ledger = LedgerService(db)
        vendor_wallet = await ledger.get_wallet(vendor_id, WalletOwnerType.VENDOR)
        user_wallet = await ledger.get_wallet(vendor_id, WalletOwnerType.USER)
        assert vendor_wallet.id != user_wallet.id
        assert vendor_wallet.balance == Decimal("30.00")
        assert user_wallet.balance == Decimal("5.00")


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrentDebits:
    """Two sessions debiting the same wallet."""

    async def test_concurrent_debits_never_overdraw(self, db, other_db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 100)

        async def attempt(session, reference):
            try:
                await LedgerService(session).debit(
                    vendor_id, 60,
                    reference=reference, reference_type=ReferenceType.COMMISSION,
                    owner_type=WalletOwnerType.VENDOR,
                )
                await session.commit()
                return True
            except InsufficientBalanceError:
                await session.rollback()
                return False

        outcomes = await asyncio.gather(attempt(db, "COMM-A"), attempt(other_db, "COMM-B"))

        assert sorted(outcomes) == [False, True]
        wallet = await LedgerService(db).get_wallet(vendor_id, WalletOwnerType.VENDOR)
        assert wallet.balance == Decimal("40.00")
        debits = await db.scalar(
            select(func.count(WalletTransaction.id)).where(
                WalletTransaction.wallet_id == wallet.id,
                WalletTransaction.direction == TransactionDirection.DEBIT,
            )
        )
        assert debits == 1

    async def test_concurrent_get_or_create_yields_one_wallet(self, db, other_db, vendor_id):
        async def create(session):
            wallet = await LedgerService(session).get_or_create(vendor_id, WalletOwnerType.VENDOR)
            await session.commit()
            return wallet.id

        first, second = await asyncio.gather(create(db), create(other_db))

        assert first == second
        count = await db.scalar(select(func.count(Wallet.id)).where(Wallet.owner_id == vendor_id))
        assert count == 1


# =============================================================================
# RECONCILIATION
# =============================================================================

class TestVerifyBalance:
    """Stored balance against the journal."""

    async def test_consistent_after_mixed_activity(self, db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 200)
        ledger = LedgerService(db)
        await ledger.debit(
            vendor_id, 75,
            reference="COMM-1", reference_type=ReferenceType.COMMISSION,
            owner_type=WalletOwnerType.VENDOR,
        )
        await db.commit()
        wallet = await ledger.get_wallet(vendor_id, WalletOwnerType.VENDOR)

        report = await ledger.verify_balance(wallet.id)

        assert report["consistent"] is True
        assert report["stored_balance"] == "125.00"
        assert report["calculated_balance"] == "125.00"
        assert report["drift"] == "0.00"

    async def test_detects_drift(self, db, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 100)
        await db.execute(
            update(Wallet).where(Wallet.owner_id == vendor_id).values(balance=Decimal("150.00"))
        )
        await db.commit()
        wallet = await LedgerService(db).get_wallet(vendor_id, WalletOwnerType.VENDOR)

        report = await LedgerService(db).verify_balance(wallet.id)

        assert report["consistent"] is False
        assert report["drift"] == "50.00"


# =============================================================================
# CACHED SUMMARY
# =============================================================================

class TestWalletSummary:
    """Cached read model over the wallet row."""

    async def test_summary_cached_until_invalidated(self, db, cache, vendor_id, fund_wallet):
        await fund_wallet(vendor_id, 20)
        ledger = LedgerService(db, cache)

        first = await ledger.get_wallet_summary(vendor_id, WalletOwnerType.VENDOR)
        assert first["balance"] == "20.00"

        await fund_wallet(vendor_id, 5)
        stale = await ledger.get_wallet_summary(vendor_id, WalletOwnerType.VENDOR)
        assert stale["balance"] == "20.00"

        await ledger.invalidate_wallet_cache(vendor_id)
        fresh = await ledger.get_wallet_summary(vendor_id, WalletOwnerType.VENDOR)
        assert fresh["balance"] == "25.00"

    async def test_summary_without_wallet(self, db, vendor_id):
        summary = await LedgerService(db).get_wallet_summary(vendor_id, WalletOwnerType.VENDOR)
        assert summary["wallet_id"] is None
        assert summary["balance"] == "0.00"
