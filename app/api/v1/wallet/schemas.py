"""
Wallet and withdrawal schemas
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.payment import PaymentStatus
from app.api.v1.payments.schemas import PaymentResponse

class BankAccount(BaseModel):
    """E-wallet payout destination"""
    account_number: str = Field(..., min_length=1, max_length=20)
    account_name: str = Field(..., min_length=1, max_length=100)
    bank_name: Optional[str] = Field(None, max_length=50)

class WithdrawalCreate(BaseModel):
    """Schema for a vendor payout request"""
    amount: int = Field(..., description="Amount in centavos")
    payout_method: str = "gcash"
    bank_account: BankAccount

    class Config:
        json_schema_extra = {
            "example": {
                "amount": 50000,
                "payout_method": "gcash",
                "bank_account": {
                    "account_number": "09171234567",
                    "account_name": "Juan Dela Cruz",
                    "bank_name": "gcash",
                },
            }
        }

class WithdrawalCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class WithdrawalApprove(BaseModel):
    admin_proof_url: Optional[str] = Field(None, max_length=1000)
    payout_reference: Optional[str] = Field(None, max_length=120)

class WithdrawalReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class WithdrawalStatusUpdate(BaseModel):
    status: PaymentStatus
    admin_proof_url: Optional[str] = Field(None, max_length=1000)
    payout_reference: Optional[str] = Field(None, max_length=120)
    reason: Optional[str] = Field(None, max_length=500)

class WithdrawalResponse(PaymentResponse):
    """Withdrawal view of a payment row"""
    approved_by: Optional[uuid.UUID] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[uuid.UUID] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    admin_proof_url: Optional[str] = None
    payout_reference: Optional[str] = None

class WalletSummary(BaseModel):
    owner_id: uuid.UUID
    owner_type: str
    wallet_id: Optional[uuid.UUID] = None
    balance: Decimal
    currency: str
    is_locked: bool = False
    recent_transactions: List[Dict[str, Any]] = []

class BalanceVerification(BaseModel):
    """Stored balance reconciled against the journal"""
    wallet_id: uuid.UUID
    stored_balance: Decimal
    calculated_balance: Decimal
    drift: Decimal
    consistent: bool
