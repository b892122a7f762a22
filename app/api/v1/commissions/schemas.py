"""
Commission schemas for request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.models.commission import CommissionStatus

class CommissionCreate(BaseModel):
    """Schema for recording a COD commission"""
    order_id: uuid.UUID
    vendor_id: uuid.UUID
    order_amount: Decimal = Field(..., gt=0, description="Order total in pesos")
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100, description="Percentage; defaults to the platform rate")
    order_number: Optional[str] = Field(None, max_length=60)
    customer_name: Optional[str] = Field(None, max_length=200)

class BulkRemitRequest(BaseModel):
    commission_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=100)

class CommissionStatusUpdate(BaseModel):
    """Admin status override"""
    status: CommissionStatus
    notes: Optional[str] = Field(None, max_length=1000)

class CommissionResponse(BaseModel):
    """Schema for commission response"""
    id: uuid.UUID
    order_id: uuid.UUID
    vendor_id: uuid.UUID
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    order_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    payment_method: str
    status: CommissionStatus
    due_date: datetime
    remitted_at: Optional[datetime] = None
    remittance_method: Optional[str] = None
    remittance_reference: Optional[str] = None
    wallet_transaction_id: Optional[uuid.UUID] = None
    remittance_history: List[Dict[str, Any]] = []
    status_history: List[Dict[str, Any]] = []
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class WalletTransactionResponse(BaseModel):
    id: uuid.UUID
    wallet_id: uuid.UUID
    direction: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference: str
    reference_type: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class RemitResponse(BaseModel):
    """Result of a wallet remittance"""
    success: bool = True
    commission: CommissionResponse
    transaction: WalletTransactionResponse
    new_balance: Decimal

class BulkRemitFailure(BaseModel):
    commission_id: uuid.UUID
    error: str

class BulkRemitSuccess(BaseModel):
    commission_id: uuid.UUID
    amount: Decimal
    transaction_id: uuid.UUID

class BulkRemitResponse(BaseModel):
    successful: List[BulkRemitSuccess] = []
    failed: List[BulkRemitFailure] = []
    total_amount: Decimal = Decimal("0.00")
    timestamp: datetime
