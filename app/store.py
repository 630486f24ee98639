"""
Tenant-scoped access to the transactions table.

Every method takes the tenant id first and filters on it; the only query that
spans tenants is the stuck-refund scan used by the startup recovery sweep,
which hands each row's own tenant id to the tenant-scoped completion path.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.enums import PaymentMethod, TransactionStatus, TransactionType
from app.models import Merchant, Transaction


@dataclass
class TransactionFilters:
    status: Optional[TransactionStatus] = None
    type: Optional[TransactionType] = None
    merchant_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    customer_email: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


class TransactionStore:
    def __init__(self, db: Session):
        self.db = db

    def find_merchant(self, tenant_id: str, merchant_id: str) -> Optional[Merchant]:
        stmt = select(Merchant).where(Merchant.tenant_id == tenant_id, Merchant.id == merchant_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, tenant_id: str, transaction_id: str) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.tenant_id == tenant_id,
            Transaction.id == transaction_id,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_reference(self, tenant_id: str, reference: str) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.tenant_id == tenant_id,
            Transaction.reference == reference,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def reference_exists(self, tenant_id: str, reference: str) -> bool:
        stmt = select(func.count()).select_from(Transaction).where(
            Transaction.tenant_id == tenant_id,
            Transaction.reference == reference,
        )
        return self.db.execute(stmt).scalar_one() > 0

    def count_for_customer(
        self,
        tenant_id: str,
        customer_email: str,
        since: Optional[datetime] = None,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
    ) -> int:
        stmt = select(func.count()).select_from(Transaction).where(
            Transaction.tenant_id == tenant_id,
            Transaction.customer_email == customer_email,
        )
        if since is not None:
            stmt = stmt.where(Transaction.created_at >= since)
        if status is not None:
            stmt = stmt.where(Transaction.status == status)
        if type is not None:
            stmt = stmt.where(Transaction.type == type)
        return self.db.execute(stmt).scalar_one()

    def add(self, transaction: Transaction) -> Transaction:
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def transition(
        self,
        tenant_id: str,
        transaction_id: str,
        expected: TransactionStatus,
        target: TransactionStatus,
        **values,
    ) -> bool:
        """Move a row from `expected` to `target` only if it is still in `expected`.

        Returns False when another writer got there first; the caller decides
        whether that is an error.
        """
        stmt = (
            update(Transaction)
            .where(
                Transaction.tenant_id == tenant_id,
                Transaction.id == transaction_id,
                Transaction.status == expected,
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def list(
        self,
        tenant_id: str,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Transaction], int]:
        filters = filters or TransactionFilters()
        conditions = [Transaction.tenant_id == tenant_id]
        if filters.status is not None:
            conditions.append(Transaction.status == filters.status)
        if filters.type is not None:
            conditions.append(Transaction.type == filters.type)
        if filters.merchant_id:
            conditions.append(Transaction.merchant_id == filters.merchant_id)
        if filters.payment_method is not None:
            conditions.append(Transaction.payment_method == filters.payment_method)
        if filters.customer_email:
            conditions.append(Transaction.customer_email == filters.customer_email)
        if filters.min_amount is not None:
            conditions.append(Transaction.amount >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(Transaction.amount <= filters.max_amount)
        if filters.created_from is not None:
            conditions.append(Transaction.created_at >= filters.created_from)
        if filters.created_to is not None:
            conditions.append(Transaction.created_at <= filters.created_to)

        total = self.db.execute(
            select(func.count()).select_from(Transaction).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return list(rows), total

    def find_stale_refunds(self, created_before: datetime, limit: int = 500) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.type == TransactionType.REFUND,
                Transaction.status == TransactionStatus.PROCESSING,
                Transaction.created_at < created_before,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
