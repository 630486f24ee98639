import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker
from typing import Optional

from app.config import Settings, get_settings
from app.database import SessionLocal, create_tables, get_db
from app.exceptions import PaymentCoreError
from app.logging_config import get_logger, setup_logging
from app.routers import transactions
from app.services.jobs import JobReaper, RecoverySweep, run_reaper_forever
from app.services.processor import TransactionProcessor

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    processor: Optional[TransactionProcessor] = None,
) -> FastAPI:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    processor = processor or TransactionProcessor(session_factory, settings=settings)
    reaper = JobReaper(processor, session_factory, batch_size=settings.reaper_batch_size)
    recovery = RecoverySweep(
        processor,
        reaper,
        session_factory,
        stuck_threshold_seconds=settings.stuck_refund_threshold_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        create_tables(session_factory.kw.get("bind"))

        if settings.run_recovery_on_startup:
            app.state.last_recovery = recovery.run()

        stop = asyncio.Event()
        reaper_task = None
        if settings.run_reaper:
            reaper_task = asyncio.create_task(
                run_reaper_forever(reaper, settings.reaper_interval_seconds, stop)
            )
        yield
        stop.set()
        if reaper_task is not None:
            await reaper_task

    app = FastAPI(
        title="Tenant Payments Core",
        description="Multi-tenant payment processing with fraud-risk scoring, refunds and crash recovery.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.processor = processor
    app.state.reaper = reaper
    app.state.recovery = recovery

    @app.exception_handler(PaymentCoreError)
    async def payment_error_handler(request: Request, exc: PaymentCoreError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(transactions.router, prefix="/api", tags=["Transactions"])

    @app.post("/api/seed", tags=["Seed"])
    def seed_data(db: Session = Depends(get_db)):
        from scripts.seed_data import run_seed
        inserted = run_seed(db)
        return inserted

    return app


app = create_app()
