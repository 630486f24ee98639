import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Numeric, DateTime, ForeignKey, Index, Integer, Text, JSON, Enum
from app.database import Base
from app.enums import (
    AuditAction,
    Currency,
    JobKind,
    JobStatus,
    MerchantStatus,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so every column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    country = Column(String, nullable=False)
    status = Column(_enum(MerchantStatus), nullable=False, default=MerchantStatus.PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_merchants_tenant_id", "tenant_id"),
    )


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=new_id)
    reference = Column(String(50), nullable=False)
    tenant_id = Column(String, nullable=False)
    merchant_id = Column(String, ForeignKey("merchants.id"), nullable=False)

    type = Column(_enum(TransactionType), nullable=False, default=TransactionType.PAYMENT)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    payment_method = Column(_enum(PaymentMethod), nullable=False)

    amount = Column(Numeric(15, 2), nullable=False)
    fee_amount = Column(Numeric(15, 2), nullable=False, default=0)
    net_amount = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(_enum(Currency), nullable=False, default=Currency.USD)

    description = Column(Text, nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    ip_address = Column(String(45), nullable=True)
    extra = Column("metadata", JSON, nullable=True)

    risk_assessment = Column(JSON, nullable=True)
    failure_code = Column(String(32), nullable=True)
    failure_reason = Column(Text, nullable=True)
    parent_transaction_id = Column(String(50), nullable=True)
    created_by = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ux_transactions_tenant_reference", "tenant_id", "reference", unique=True),
        Index("ix_transactions_tenant_customer", "tenant_id", "customer_email", "created_at"),
        Index("ix_transactions_merchant_id", "merchant_id"),
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_type_status_created", "type", "status", "created_at"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    actor_id = Column(String, nullable=True)
    action = Column(_enum(AuditAction), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String, nullable=True)
    description = Column(Text, nullable=False)
    extra = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_tenant_entity", "tenant_id", "entity_type", "entity_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False)
    transaction_id = Column(String, ForeignKey("transactions.id"), nullable=False)
    kind = Column(_enum(JobKind), nullable=False)
    status = Column(_enum(JobStatus), nullable=False, default=JobStatus.PENDING)
    due_at = Column(DateTime, nullable=False)
    actor_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_scheduled_jobs_status_due", "status", "due_at"),
        Index("ix_scheduled_jobs_transaction_id", "transaction_id"),
    )
