"""
Wallet ledger service

Every balance change is a single conditional UPDATE followed by an
append-only WalletTransaction row in the caller's transaction. Nothing here
commits; callers own the unit of work.
"""

from typing import Any, Dict, Optional, Union
from decimal import Decimal
import logging
import uuid

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import RedisCache
from app.core.config import settings
from app.core.exceptions import ValidationError, InsufficientBalanceError, NotFoundError
from app.models import (
    Wallet,
    WalletTransaction,
    WalletOwnerType,
    TransactionDirection,
    TransactionStatus,
    ReferenceType,
)
from app.utils.helpers import quantize_money, utcnow, format_currency

logger = logging.getLogger(__name__)

Amount = Union[int, float, str, Decimal]

def wallet_cache_keys(owner_id) -> list:
    return [f"wallet:{owner_id}", f"wallet:balance:{owner_id}"]

class LedgerService:
    """Atomic wallet credits and debits with an append-only journal"""

    def __init__(self, db: AsyncSession, cache: Optional[RedisCache] = None):
        self.db = db
        self.cache = cache

    def _insert_ignore(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            return None
        return insert

    async def get_wallet(
        self,
        owner_id: uuid.UUID,
        owner_type: WalletOwnerType = WalletOwnerType.USER,
    ) -> Optional[Wallet]:
        result = await self.db.execute(
            select(Wallet)
            .where(Wallet.owner_id == owner_id, Wallet.owner_type == owner_type)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        owner_id: uuid.UUID,
        owner_type: WalletOwnerType = WalletOwnerType.USER,
    ) -> Wallet:
        """
        Look up a wallet, inserting a zero-balance one if absent

        Safe under concurrent callers: the insert is conflict-ignoring on the
        (owner_type, owner_id) unique key.
        """
        wallet = await self.get_wallet(owner_id, owner_type)
        if wallet:
            return wallet

        insert = self._insert_ignore()
        if insert is not None:
            now = utcnow()
            await self.db.execute(
                insert(Wallet)
                .values(
                    id=uuid.uuid4(),
                    owner_id=owner_id,
                    owner_type=owner_type,
                    balance=Decimal("0.00"),
                    currency=settings.CURRENCY,
                    is_locked=False,
                    recent_transactions=[],
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["owner_type", "owner_id"])
            )
        else:
            try:
                async with self.db.begin_nested():
                    self.db.add(Wallet(owner_id=owner_id, owner_type=owner_type, balance=Decimal("0.00")))
            except IntegrityError:
                logger.debug(f"Wallet for {owner_type}:{owner_id} created concurrently")

        wallet = await self.get_wallet(owner_id, owner_type)
        if wallet is None:
            raise NotFoundError("Wallet could not be created")
        logger.info(f"Wallet ready for {owner_type.value}:{owner_id}")
        return wallet

    async def credit(
        self,
        owner_id: uuid.UUID,
        amount: Amount,
        *,
        reference: str,
        reference_type: ReferenceType,
        reference_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        owner_type: WalletOwnerType = WalletOwnerType.USER,
    ) -> WalletTransaction:
        """
        Atomically add funds and journal the credit

        Raises:
            ValidationError: If amount is not positive
        """
        return await self._apply(
            TransactionDirection.CREDIT,
            owner_id,
            amount,
            owner_type=owner_type,
            reference=reference,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
        )

    async def debit(
        self,
        owner_id: uuid.UUID,
        amount: Amount,
        *,
        reference: str,
        reference_type: ReferenceType,
        reference_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        owner_type: WalletOwnerType = WalletOwnerType.USER,
    ) -> WalletTransaction:
        """
        Atomically remove funds and journal the debit

        The balance check and decrement are one UPDATE statement, so
        concurrent debits can never overdraw the wallet.

        Raises:
            ValidationError: If amount is not positive
            InsufficientBalanceError: If balance is short or the wallet is locked
        """
        return await self._apply(
            TransactionDirection.DEBIT,
            owner_id,
            amount,
            owner_type=owner_type,
            reference=reference,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
        )

    async def _apply(
        self,
        direction: TransactionDirection,
        owner_id: uuid.UUID,
        amount: Amount,
        *,
        owner_type: WalletOwnerType,
        reference: str,
        reference_type: ReferenceType,
        reference_id: Optional[uuid.UUID],
        description: Optional[str],
    ) -> WalletTransaction:
        amount = quantize_money(amount)
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be a positive number")

        wallet = await self.get_or_create(owner_id, owner_type)

        stmt = update(Wallet).where(Wallet.id == wallet.id)
        if direction == TransactionDirection.CREDIT:
            stmt = stmt.values(balance=Wallet.balance + amount, updated_at=utcnow())
        else:
            stmt = stmt.where(
                Wallet.balance >= amount,
                Wallet.is_locked.is_(False),
            ).values(balance=Wallet.balance - amount, updated_at=utcnow())

        result = await self.db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            current = await self.get_wallet(owner_id, owner_type)
            if current is not None and current.is_locked:
                raise InsufficientBalanceError("Wallet is locked")
            have = current.balance if current is not None else Decimal("0")
            raise InsufficientBalanceError(
                f"Insufficient wallet balance. Have: {format_currency(have)}, Need: {format_currency(amount)}"
            )

        # Row is write-locked by this transaction until commit
        wallet = await self.get_wallet(owner_id, owner_type)
        balance_after = quantize_money(wallet.balance)
        if direction == TransactionDirection.CREDIT:
            balance_before = balance_after - amount
        else:
            balance_before = balance_after + amount

        txn = WalletTransaction(
            id=uuid.uuid4(),
            wallet_id=wallet.id,
            direction=direction,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            status=TransactionStatus.COMPLETED,
            reference=reference,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
        )
        self.db.add(txn)

        entry = {
            "id": str(txn.id),
            "type": direction.value,
            "amount": str(amount),
            "reference": reference,
            "description": description,
            "created_at": utcnow().isoformat(),
        }
        limit = settings.WALLET_RECENT_TRANSACTIONS_LIMIT
        wallet.recent_transactions = [entry] + list(wallet.recent_transactions or [])[: limit - 1]
        await self.db.flush()

        logger.info(
            f"Wallet {direction.value}: wallet={wallet.id} owner={owner_id} amount={amount} "
            f"before={balance_before} after={balance_after} ref={reference}"
        )
        return txn

    async def verify_balance(self, wallet_id: uuid.UUID) -> Dict[str, Any]:
        """
        Recompute a wallet balance from its journal

        Args:
            wallet_id: Wallet to reconcile

        Returns:
            Stored balance, journal balance, drift and whether it is within tolerance
        """
        wallet = await self.db.get(Wallet, wallet_id, populate_existing=True)
        if not wallet:
            raise NotFoundError("Wallet not found")

        signed = case(
            (WalletTransaction.direction == TransactionDirection.CREDIT, WalletTransaction.amount),
            else_=-WalletTransaction.amount,
        )
        calculated = await self.db.scalar(
            select(func.coalesce(func.sum(signed), 0)).where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        stored = quantize_money(wallet.balance)
        calculated = quantize_money(calculated or 0)
        drift = stored - calculated
        consistent = abs(drift) <= Decimal(str(settings.MONEY_EPSILON))
        if not consistent:
            logger.warning(
                f"Wallet balance drift detected: wallet={wallet_id} stored={stored} "
                f"calculated={calculated} drift={drift}"
            )
        return {
            "wallet_id": str(wallet_id),
            "stored_balance": str(stored),
            "calculated_balance": str(calculated),
            "drift": str(drift),
            "consistent": consistent,
        }

    async def get_wallet_summary(
        self,
        owner_id: uuid.UUID,
        owner_type: WalletOwnerType = WalletOwnerType.USER,
    ) -> Dict[str, Any]:
        """Cached balance plus the recent-transaction tail"""
        cache_key = f"wallet:{owner_id}"
        if self.cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        wallet = await self.get_wallet(owner_id, owner_type)
        summary = {
            "owner_id": str(owner_id),
            "owner_type": owner_type.value,
            "wallet_id": str(wallet.id) if wallet else None,
            "balance": str(quantize_money(wallet.balance)) if wallet else "0.00",
            "currency": wallet.currency if wallet else settings.CURRENCY,
            "is_locked": bool(wallet.is_locked) if wallet else False,
            "recent_transactions": list(wallet.recent_transactions or []) if wallet else [],
        }
        if self.cache:
            await self.cache.set(cache_key, summary, settings.CACHE_TTL_SHORT)
        return summary

    async def invalidate_wallet_cache(self, owner_id: uuid.UUID) -> None:
        if not self.cache:
            return
        try:
            await self.cache.delete_many(wallet_cache_keys(owner_id))
        except Exception as e:
            logger.warning(f"Wallet cache invalidation failed for {owner_id}: {e}")
