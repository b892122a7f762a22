"""
Wallet ledger models
Balance is only ever changed through conditional UPDATE statements
"""

from sqlalchemy import Column, String, Numeric, Boolean, ForeignKey, Index, Text, JSON, Uuid, UniqueConstraint, CheckConstraint
import enum

from .base import BaseModel, enum_type

class WalletOwnerType(str, enum.Enum):
    USER = "user"
    VENDOR = "vendor"

class TransactionDirection(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"

class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"

class ReferenceType(str, enum.Enum):
    """What caused a ledger entry"""
    CASH_IN = "cash_in"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_REVERSAL = "withdrawal_reversal"
    COMMISSION = "commission"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"

class Wallet(BaseModel):
    """One wallet per (owner_type, owner_id)"""

    __tablename__ = "wallets"

    owner_id = Column(Uuid, nullable=False)
    owner_type = Column(enum_type(WalletOwnerType), nullable=False)
    balance = Column(Numeric(12, 2), default=0, nullable=False)
    currency = Column(String(3), default="PHP", nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)

    # Display-only tail of the ledger, newest first
    recent_transactions = Column(JSON, default=list, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", name="uq_wallet_owner"),
        CheckConstraint("balance >= 0", name="check_wallet_balance_non_negative"),
    )

class WalletTransaction(BaseModel):
    """Append-only ledger entry"""

    __tablename__ = "wallet_transactions"

    wallet_id = Column(Uuid, ForeignKey("wallets.id", ondelete="RESTRICT"), nullable=False)
    direction = Column(enum_type(TransactionDirection), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    status = Column(enum_type(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False)
    reference = Column(String(150), nullable=False)
    reference_type = Column(enum_type(ReferenceType), nullable=False)
    reference_id = Column(Uuid, nullable=True)
    description = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_wallet_transaction_positive"),
        Index("idx_wallet_transactions_wallet", "wallet_id", "created_at"),
        Index("idx_wallet_transactions_reference", "reference_type", "reference_id"),
    )

    def __str__(self):
        return f"{self.direction} {self.amount} ({self.reference})"
