from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional

from app.enums import (
    AuditAction,
    Currency,
    PaymentMethod,
    Recommendation,
    RiskLevel,
    TransactionStatus,
    TransactionType,
)


class CreateTransactionRequest(BaseModel):
    type: TransactionType = TransactionType.PAYMENT
    payment_method: PaymentMethod
    amount: Decimal = Field(..., gt=0, le=Decimal("999999.99"), decimal_places=2)
    currency: Currency = Currency.USD
    merchant_id: str
    customer_email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    customer_phone: Optional[str] = Field(None, max_length=20)
    ip_address: Optional[str] = Field(None, max_length=45)
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class FailRequest(BaseModel):
    failure_code: str = Field(..., min_length=1, max_length=32)
    failure_reason: str = Field(..., min_length=1, max_length=500)


class RiskAssessment(BaseModel):
    score: int
    level: RiskLevel
    factors: List[str]
    fraud_probability: float
    recommendation: Recommendation


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reference: str
    tenant_id: str
    merchant_id: str
    type: TransactionType
    status: TransactionStatus
    payment_method: PaymentMethod
    amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    currency: Currency
    description: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra")
    risk_assessment: Optional[RiskAssessment] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None


class TransactionPage(BaseModel):
    items: List[TransactionOut]
    total: int
    limit: int
    offset: int


class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    action: AuditAction
    entity_type: str
    entity_id: Optional[str] = None
    description: str
    actor_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra")
    created_at: datetime
