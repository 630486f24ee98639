from decimal import Decimal
from fastapi import APIRouter, Depends, Header, Query, Request
from typing import List, Optional

from app.enums import PaymentMethod, TransactionStatus, TransactionType
from app.schemas import (
    AuditEntry,
    CancelRequest,
    CreateTransactionRequest,
    FailRequest,
    RefundRequest,
    TransactionOut,
    TransactionPage,
)
from app.services.processor import ENTITY_TYPE, TransactionProcessor
from app.store import TransactionFilters

router = APIRouter()


def get_processor(request: Request) -> TransactionProcessor:
    return request.app.state.processor


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1)) -> str:
    return x_tenant_id


def get_actor_id(x_actor_id: Optional[str] = Header(None, alias="X-Actor-ID")) -> Optional[str]:
    return x_actor_id


@router.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    body: CreateTransactionRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    """
    Submit a transaction. It is scored for fraud risk and then:
    - **approve**: settles automatically after a short delay.
    - **review**: parked in `processing` until completed or failed explicitly.
    - **decline**: failed immediately with `FRAUD_SUSPECTED`.
    """
    return processor.process_transaction(body, tenant_id, actor_id)


@router.get("/transactions", response_model=TransactionPage)
def list_transactions(
    status: Optional[TransactionStatus] = Query(None, description="Filter by status"),
    type: Optional[TransactionType] = Query(None, description="Filter by transaction type"),
    merchant_id: Optional[str] = Query(None, description="Filter by merchant"),
    payment_method: Optional[PaymentMethod] = Query(None, description="Filter by payment method"),
    customer_email: Optional[str] = Query(None, description="Filter by customer email"),
    min_amount: Optional[Decimal] = Query(None, ge=0, description="Minimum amount"),
    max_amount: Optional[Decimal] = Query(None, ge=0, description="Maximum amount"),
    limit: int = Query(50, ge=1, le=500, description="Maximum number of results"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
    tenant_id: str = Depends(get_tenant_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    filters = TransactionFilters(
        status=status,
        type=type,
        merchant_id=merchant_id,
        payment_method=payment_method,
        customer_email=customer_email,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    items, total = processor.list_transactions(tenant_id, filters, limit=limit, offset=offset)
    return TransactionPage(
        items=[TransactionOut.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/transactions/by-reference/{reference}", response_model=TransactionOut)
def get_transaction_by_reference(
    reference: str,
    tenant_id: str = Depends(get_tenant_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    return processor.get_by_reference(reference, tenant_id)


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    return processor.get_transaction(transaction_id, tenant_id)


@router.get("/transactions/{transaction_id}/audit", response_model=List[AuditEntry])
def get_transaction_audit(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    transaction = processor.get_transaction(transaction_id, tenant_id)
    return processor.audit.find_by_entity(tenant_id, ENTITY_TYPE, transaction.id)


@router.post("/transactions/{reference}/refund", response_model=TransactionOut, status_code=201)
def refund_transaction(
    reference: str,
    body: RefundRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    """
    Refund a completed transaction, fully or partially. The refund is created
    in `processing` and settles after the configured refund delay.
    """
    return processor.refund_transaction(reference, body.amount, body.reason, tenant_id, actor_id)


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionOut)
def cancel_transaction(
    transaction_id: str,
    body: CancelRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    return processor.cancel_transaction(transaction_id, tenant_id, body.reason, actor_id)


@router.post("/transactions/{transaction_id}/complete", response_model=TransactionOut)
def complete_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    return processor.complete_transaction(transaction_id, tenant_id, actor_id)


@router.post("/transactions/{transaction_id}/fail", response_model=TransactionOut)
def fail_transaction(
    transaction_id: str,
    body: FailRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: Optional[str] = Depends(get_actor_id),
    processor: TransactionProcessor = Depends(get_processor),
):
    return processor.fail_transaction(
        transaction_id, body.failure_code, body.failure_reason, tenant_id, actor_id
    )
