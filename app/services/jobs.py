"""
Durable deferred completions.

Settlement and refund lags are stored as rows in `scheduled_jobs` with a
due time, written in the same database transaction as the state change that
needs them. A reaper claims due rows with a conditional update and runs the
matching processor transition, so a restart never loses a pending completion.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from app.enums import JobKind, JobStatus
from app.exceptions import InvalidStateError, PaymentCoreError
from app.models import ScheduledJob, Transaction, utcnow
from app.store import TransactionStore

if TYPE_CHECKING:
    from app.services.processor import TransactionProcessor

logger = structlog.get_logger(__name__)


class JobQueue:
    def __init__(self, db: Session):
        self.db = db

    def schedule(
        self,
        kind: JobKind,
        transaction: Transaction,
        delay_seconds: float,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledJob:
        job = ScheduledJob(
            tenant_id=transaction.tenant_id,
            transaction_id=transaction.id,
            kind=kind,
            status=JobStatus.PENDING,
            due_at=(now or utcnow()) + timedelta(seconds=delay_seconds),
            actor_id=actor_id,
        )
        self.db.add(job)
        self.db.flush()
        return job

    def cancel_pending(self, tenant_id: str, transaction_id: str, now: Optional[datetime] = None) -> int:
        stmt = (
            update(ScheduledJob)
            .where(
                ScheduledJob.tenant_id == tenant_id,
                ScheduledJob.transaction_id == transaction_id,
                ScheduledJob.status == JobStatus.PENDING,
            )
            .values(status=JobStatus.CANCELLED, finished_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def claim_due(self, now: datetime, limit: int = 100) -> List[ScheduledJob]:
        candidates = self.db.execute(
            select(ScheduledJob)
            .where(ScheduledJob.status == JobStatus.PENDING, ScheduledJob.due_at <= now)
            .order_by(ScheduledJob.due_at)
            .limit(limit)
        ).scalars().all()

        claimed = []
        for job in candidates:
            stmt = (
                update(ScheduledJob)
                .where(ScheduledJob.id == job.id, ScheduledJob.status == JobStatus.PENDING)
                .values(status=JobStatus.RUNNING, attempts=ScheduledJob.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            if self.db.execute(stmt).rowcount == 1:
                claimed.append(job)
        return claimed

    def finish(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.db.execute(
            update(ScheduledJob)
            .where(ScheduledJob.id == job_id)
            .values(status=status, last_error=error, finished_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )

    def requeue_running(self) -> int:
        """Hand jobs orphaned by a crashed process back to the queue."""
        stmt = (
            update(ScheduledJob)
            .where(ScheduledJob.status == JobStatus.RUNNING)
            .values(status=JobStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount


@dataclass
class ReapResult:
    claimed: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0


class JobReaper:
    def __init__(
        self,
        processor: "TransactionProcessor",
        session_factory: sessionmaker,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.processor = processor
        self._session_factory = session_factory
        self.batch_size = batch_size
        self._clock = clock

    def run_once(self, now: Optional[datetime] = None) -> ReapResult:
        now = now or self._clock()
        result = ReapResult()

        with self._session_factory() as db:
            jobs = JobQueue(db).claim_due(now, self.batch_size)
            db.commit()

        result.claimed = len(jobs)
        for job in jobs:
            status, error = self._execute(job)
            if status is JobStatus.DONE and error is None:
                result.completed += 1
            elif status is JobStatus.DONE:
                result.skipped += 1
            else:
                result.failed += 1
            try:
                with self._session_factory() as db:
                    JobQueue(db).finish(job.id, status, error)
                    db.commit()
            except Exception as e:
                # Left running; requeue_running hands it back on the next recovery sweep.
                logger.error("scheduled_job_finish_failed", job_id=job.id, status=status.value, error=str(e))

        if jobs:
            logger.info(
                "scheduled_jobs_reaped",
                claimed=result.claimed,
                completed=result.completed,
                skipped=result.skipped,
                failed=result.failed,
            )
        return result

    def _execute(self, job: ScheduledJob):
        log = logger.bind(job_id=job.id, kind=job.kind.value, transaction_id=job.transaction_id, tenant_id=job.tenant_id)
        try:
            if job.kind is JobKind.COMPLETE_REFUND:
                self.processor.complete_refund(job.transaction_id, job.tenant_id, job.actor_id)
            else:
                self.processor.complete_transaction(job.transaction_id, job.tenant_id, job.actor_id)
        except InvalidStateError as e:
            # Already moved on (cancelled, failed, or completed by someone else).
            log.info("scheduled_job_skipped", reason=e.message)
            return JobStatus.DONE, e.message
        except PaymentCoreError as e:
            log.warning("scheduled_job_failed", error=e.message)
            return JobStatus.FAILED, e.message
        except Exception as e:
            log.exception("scheduled_job_crashed")
            return JobStatus.FAILED, str(e)
        log.debug("scheduled_job_completed")
        return JobStatus.DONE, None


async def run_reaper_forever(reaper: JobReaper, interval_seconds: float, stop: asyncio.Event) -> None:
    logger.info("job_reaper_started", interval=interval_seconds)
    while not stop.is_set():
        try:
            await asyncio.to_thread(reaper.run_once)
        except Exception as e:
            logger.error("job_reaper_poll_failed", error=str(e))
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("job_reaper_stopped")


@dataclass
class RecoveryReport:
    requeued_jobs: int = 0
    reaped: ReapResult = field(default_factory=ReapResult)
    stuck_refunds: int = 0
    recovered_refunds: int = 0
    already_settled: int = 0
    failed_refunds: List[str] = field(default_factory=list)
    aborted: bool = False


class RecoverySweep:
    """Startup pass that finishes work a previous process left behind."""

    def __init__(
        self,
        processor: "TransactionProcessor",
        reaper: JobReaper,
        session_factory: sessionmaker,
        stuck_threshold_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.processor = processor
        self.reaper = reaper
        self._session_factory = session_factory
        self.stuck_threshold = timedelta(seconds=stuck_threshold_seconds)
        self._clock = clock

    def run(self) -> RecoveryReport:
        report = RecoveryReport()
        now = self._clock()
        logger.info("recovery_sweep_started")

        try:
            with self._session_factory() as db:
                report.requeued_jobs = JobQueue(db).requeue_running()
                db.commit()
            report.reaped = self._drain(now)
            with self._session_factory() as db:
                stuck = TransactionStore(db).find_stale_refunds(now - self.stuck_threshold)
        except Exception as e:
            report.aborted = True
            logger.error("recovery_sweep_aborted", error=str(e))
            return report

        report.stuck_refunds = len(stuck)
        for refund in stuck:
            log = logger.bind(transaction_id=refund.id, reference=refund.reference, tenant_id=refund.tenant_id)
            try:
                self.processor.complete_refund(refund.id, refund.tenant_id, refund.created_by)
                report.recovered_refunds += 1
                log.info("refund_recovered")
            except InvalidStateError:
                report.already_settled += 1
                log.info("refund_already_settled")
            except Exception as e:
                report.failed_refunds.append(refund.id)
                log.error("refund_recovery_failed", error=str(e))

        logger.info(
            "recovery_sweep_finished",
            requeued_jobs=report.requeued_jobs,
            reaped_jobs=report.reaped.claimed,
            stuck_refunds=report.stuck_refunds,
            recovered_refunds=report.recovered_refunds,
            failed_refunds=len(report.failed_refunds),
        )
        return report

    def _drain(self, now: datetime) -> ReapResult:
        total = ReapResult()
        while True:
            batch = self.reaper.run_once(now)
            total.claimed += batch.claimed
            total.completed += batch.completed
            total.skipped += batch.skipped
            total.failed += batch.failed
            if batch.claimed < self.reaper.batch_size:
                return total
