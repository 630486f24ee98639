"""
Transaction processor.

Orchestrates a payment from submission to its risk-driven outcome and owns
every status change afterwards. Transitions are conditional writes keyed on
the status that was read, so a transition is applied at most once even when
the reaper, the recovery sweep and an API call race on the same row.
"""
import secrets
import string
import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings, get_settings
from app.constants import (
    CENT,
    DEFAULT_CANCEL_REASON,
    DEFAULT_FEE_RATE,
    FEE_RATES,
    FRAUD_DECLINE_REASON,
    FRAUD_SUSPECTED,
    REFERENCE_PREFIX,
    can_transition,
)
from app.enums import (
    AuditAction,
    JobKind,
    MerchantStatus,
    PaymentMethod,
    Recommendation,
    TransactionStatus,
    TransactionType,
)
from app.exceptions import InvalidArgumentError, InvalidStateError, NotFoundError, TransientError
from app.models import Transaction, new_id, utcnow
from app.schemas import CreateTransactionRequest
from app.services.audit import AuditRecorder
from app.services.jobs import JobQueue
from app.services.risk_scorer import NetworkIpReputation, RiskScorer
from app.store import TransactionFilters, TransactionStore

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "Transaction"
TERMINAL_STATUSES = {
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
}
_BASE36 = string.digits + string.ascii_lowercase


def calculate_fee(amount: Decimal, payment_method: PaymentMethod) -> Decimal:
    rate = FEE_RATES.get(payment_method, DEFAULT_FEE_RATE)
    return (Decimal(amount) * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_reference(now_ms: Optional[int] = None) -> str:
    timestamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{REFERENCE_PREFIX}_{timestamp}_{suffix}".upper()


class TransactionProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        risk_scorer: Optional[RiskScorer] = None,
        audit: Optional[AuditRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._clock = clock
        self.risk_scorer = risk_scorer or RiskScorer(
            session_factory,
            ip_reputation=NetworkIpReputation.from_settings(self.settings),
            clock=clock,
        )
        self.audit = audit or AuditRecorder(session_factory)

    @contextmanager
    def _unit_of_work(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TransientError(f"Transaction store unavailable: {e.__class__.__name__}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def process_transaction(
        self,
        request: CreateTransactionRequest,
        tenant_id: str,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        started = time.perf_counter()
        log = logger.bind(tenant_id=tenant_id, actor_id=actor_id, merchant_id=request.merchant_id)
        log.info(
            "transaction_processing_started",
            amount=str(request.amount),
            currency=request.currency.value,
            payment_method=request.payment_method.value,
        )

        if request.type is TransactionType.REFUND:
            raise InvalidArgumentError("Refunds must be issued against an existing transaction")

        try:
            with self._unit_of_work() as db:
                self._require_active_merchant(TransactionStore(db), tenant_id, request.merchant_id)

            fee_amount = calculate_fee(request.amount, request.payment_method)
            try:
                assessment = self.risk_scorer.assess_risk(request, tenant_id)
            except SQLAlchemyError as e:
                raise TransientError("Customer history unavailable for risk assessment") from e

            with self._unit_of_work() as db:
                store = TransactionStore(db)
                now = self._clock()
                transaction = store.add(Transaction(
                    id=new_id(),
                    reference=self._unique_reference(store, tenant_id),
                    tenant_id=tenant_id,
                    merchant_id=request.merchant_id,
                    type=request.type,
                    payment_method=request.payment_method,
                    amount=request.amount,
                    fee_amount=fee_amount,
                    net_amount=request.amount - fee_amount,
                    currency=request.currency,
                    description=request.description,
                    customer_email=request.customer_email,
                    customer_phone=request.customer_phone,
                    ip_address=request.ip_address,
                    extra=request.metadata,
                    risk_assessment=assessment.model_dump(mode="json"),
                    created_by=actor_id,
                    created_at=now,
                    updated_at=now,
                    **self._risk_outcome(assessment.recommendation, now),
                ))

                if assessment.recommendation is Recommendation.APPROVE:
                    JobQueue(db).schedule(
                        JobKind.COMPLETE_TRANSACTION,
                        transaction,
                        self.settings.settlement_delay_seconds,
                        actor_id=actor_id,
                        now=now,
                    )
        except Exception as e:
            log.warning(
                "transaction_processing_failed",
                error=getattr(e, "message", str(e)),
                elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise

        log = log.bind(transaction_id=transaction.id, reference=transaction.reference)
        log.info(
            "transaction_created",
            status=transaction.status.value,
            fee_amount=str(transaction.fee_amount),
            risk_score=assessment.score,
            recommendation=assessment.recommendation.value,
        )
        self.audit.append(
            AuditAction.CREATE,
            ENTITY_TYPE,
            transaction.id,
            f"Transaction {transaction.reference} created",
            tenant_id,
            actor_id,
            {
                "amount": str(request.amount),
                "payment_method": request.payment_method.value,
                "risk_score": assessment.score,
            },
        )
        if assessment.recommendation is Recommendation.REVIEW:
            self.audit.append(
                AuditAction.UPDATE,
                ENTITY_TYPE,
                transaction.id,
                f"Transaction {transaction.reference} marked for manual review",
                tenant_id,
                actor_id,
                {"risk_score": assessment.score},
            )
        elif assessment.recommendation is Recommendation.DECLINE:
            self.audit.append(
                AuditAction.UPDATE,
                ENTITY_TYPE,
                transaction.id,
                f"Transaction {transaction.reference} failed: {FRAUD_DECLINE_REASON}",
                tenant_id,
                actor_id,
                {"failure_code": FRAUD_SUSPECTED, "failure_reason": FRAUD_DECLINE_REASON},
            )

        log.info(
            "transaction_processing_completed",
            status=transaction.status.value,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return transaction

    @staticmethod
    def _risk_outcome(recommendation: Recommendation, now: datetime) -> Dict[str, Any]:
        """Column values for the status the risk decision lands the new row in."""
        if recommendation is Recommendation.REVIEW:
            return {"status": TransactionStatus.PROCESSING, "processed_at": now}
        if recommendation is Recommendation.DECLINE:
            return {
                "status": TransactionStatus.FAILED,
                "failure_code": FRAUD_SUSPECTED,
                "failure_reason": FRAUD_DECLINE_REASON,
                "processed_at": now,
            }
        return {"status": TransactionStatus.PENDING}

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    def complete_transaction(self, transaction_id: str, tenant_id: str, actor_id: Optional[str] = None) -> Transaction:
        now = self._clock()
        return self._transition(
            transaction_id,
            tenant_id,
            TransactionStatus.COMPLETED,
            actor_id=actor_id,
            describe=lambda t: f"Transaction {t.reference} completed",
            processed_at=now,
            settled_at=now,
            updated_at=now,
        )

    def complete_refund(self, refund_id: str, tenant_id: str, actor_id: Optional[str] = None) -> Transaction:
        now = self._clock()
        return self._transition(
            refund_id,
            tenant_id,
            TransactionStatus.COMPLETED,
            actor_id=actor_id,
            expected_type=TransactionType.REFUND,
            describe=lambda t: f"Refund {t.reference} completed",
            processed_at=now,
            settled_at=now,
            updated_at=now,
        )

    def fail_transaction(
        self,
        transaction_id: str,
        failure_code: str,
        failure_reason: str,
        tenant_id: str,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        now = self._clock()
        return self._transition(
            transaction_id,
            tenant_id,
            TransactionStatus.FAILED,
            actor_id=actor_id,
            describe=lambda t: f"Transaction {t.reference} failed: {failure_reason}",
            audit_metadata=lambda t: {"failure_code": failure_code, "failure_reason": failure_reason},
            failure_code=failure_code,
            failure_reason=failure_reason,
            processed_at=now,
            updated_at=now,
        )

    def cancel_transaction(
        self,
        transaction_id: str,
        tenant_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        now = self._clock()
        reason = reason or DEFAULT_CANCEL_REASON
        return self._transition(
            transaction_id,
            tenant_id,
            TransactionStatus.CANCELLED,
            actor_id=actor_id,
            describe=lambda t: f"Transaction {t.reference} cancelled",
            audit_metadata=lambda t: {"reason": reason},
            failure_reason=reason,
            processed_at=now,
            updated_at=now,
        )

    def _transition(
        self,
        transaction_id: str,
        tenant_id: str,
        target: TransactionStatus,
        *,
        actor_id: Optional[str],
        describe: Callable[[Transaction], str],
        audit_metadata: Optional[Callable[[Transaction], Dict[str, Any]]] = None,
        expected_type: Optional[TransactionType] = None,
        **values,
    ) -> Transaction:
        with self._unit_of_work() as db:
            store = TransactionStore(db)
            transaction = store.get(tenant_id, transaction_id)
            if transaction is None:
                raise NotFoundError("Transaction not found")
            if expected_type is not None and transaction.type is not expected_type:
                raise InvalidArgumentError(
                    f"Transaction {transaction.reference} is a {transaction.type.value}, not a {expected_type.value}"
                )

            current = transaction.status
            if not can_transition(current, target):
                raise InvalidStateError(
                    f"Cannot move transaction {transaction.reference} from {current.value} to {target.value}"
                )
            if not store.transition(tenant_id, transaction_id, current, target, **values):
                raise InvalidStateError(f"Transaction {transaction.reference} was modified concurrently")

            if target in TERMINAL_STATUSES:
                JobQueue(db).cancel_pending(tenant_id, transaction_id)
            db.refresh(transaction)

        logger.info(
            "transaction_transitioned",
            tenant_id=tenant_id,
            transaction_id=transaction.id,
            reference=transaction.reference,
            from_status=current.value,
            to_status=target.value,
        )
        self.audit.append(
            AuditAction.UPDATE,
            ENTITY_TYPE,
            transaction.id,
            describe(transaction),
            tenant_id,
            actor_id,
            audit_metadata(transaction) if audit_metadata else None,
        )
        return transaction

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund_transaction(
        self,
        parent_reference: str,
        amount: Decimal,
        reason: str,
        tenant_id: str,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        amount = Decimal(amount)
        log = logger.bind(tenant_id=tenant_id, actor_id=actor_id, parent_reference=parent_reference)

        with self._unit_of_work() as db:
            store = TransactionStore(db)
            parent = store.get_by_reference(tenant_id, parent_reference)
            if parent is None:
                raise NotFoundError("Transaction not found")
            if parent.status is not TransactionStatus.COMPLETED:
                raise InvalidStateError("Can only refund completed transactions")
            if parent.type is TransactionType.REFUND:
                raise InvalidArgumentError("A refund cannot itself be refunded")
            if amount <= 0:
                raise InvalidArgumentError("Refund amount must be positive")
            if amount > parent.amount:
                raise InvalidArgumentError("Refund amount cannot exceed original amount")

            is_partial = amount < parent.amount
            parent_status = TransactionStatus.PARTIALLY_REFUNDED if is_partial else TransactionStatus.REFUNDED
            now = self._clock()

            if not store.transition(tenant_id, parent.id, TransactionStatus.COMPLETED, parent_status, updated_at=now):
                raise InvalidStateError(f"Transaction {parent.reference} was refunded concurrently")

            refund = store.add(Transaction(
                id=new_id(),
                reference=self._unique_reference(store, tenant_id),
                tenant_id=tenant_id,
                merchant_id=parent.merchant_id,
                type=TransactionType.REFUND,
                status=TransactionStatus.PROCESSING,
                payment_method=parent.payment_method,
                amount=amount,
                fee_amount=Decimal("0.00"),
                net_amount=amount,
                currency=parent.currency,
                description=f"Refund for {parent.reference}: {reason}",
                customer_email=parent.customer_email,
                customer_phone=parent.customer_phone,
                parent_transaction_id=parent.reference,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            ))
            JobQueue(db).schedule(
                JobKind.COMPLETE_REFUND,
                refund,
                self.settings.refund_delay_seconds,
                actor_id=actor_id,
                now=now,
            )

        log.info(
            "refund_created",
            refund_id=refund.id,
            refund_reference=refund.reference,
            amount=str(amount),
            partial=is_partial,
        )
        self.audit.append(
            AuditAction.CREATE,
            ENTITY_TYPE,
            refund.id,
            f"Refund {refund.reference} created for transaction {parent.reference}",
            tenant_id,
            actor_id,
            {
                "original_transaction_id": parent.reference,
                "refund_amount": str(amount),
                "reason": reason,
                "is_partial_refund": is_partial,
            },
        )
        return refund

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str, tenant_id: str) -> Transaction:
        with self._unit_of_work() as db:
            transaction = TransactionStore(db).get(tenant_id, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        return transaction

    def get_by_reference(self, reference: str, tenant_id: str) -> Transaction:
        with self._unit_of_work() as db:
            transaction = TransactionStore(db).get_by_reference(tenant_id, reference)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        return transaction

    def list_transactions(
        self,
        tenant_id: str,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Transaction], int]:
        with self._unit_of_work() as db:
            return TransactionStore(db).list(tenant_id, filters, limit=limit, offset=offset)

    # ------------------------------------------------------------------

    @staticmethod
    def _require_active_merchant(store: TransactionStore, tenant_id: str, merchant_id: str) -> None:
        merchant = store.find_merchant(tenant_id, merchant_id)
        if merchant is None:
            raise NotFoundError("Merchant not found")
        if merchant.status is not MerchantStatus.ACTIVE:
            raise InvalidStateError("Merchant is not active")

    @staticmethod
    def _unique_reference(store: TransactionStore, tenant_id: str, attempts: int = 5) -> str:
        for _ in range(attempts):
            reference = generate_reference()
            if not store.reference_exists(tenant_id, reference):
                return reference
        raise TransientError("Could not allocate a unique transaction reference")
