import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Base, build_session_factory
from app.enums import MerchantStatus, PaymentMethod, TransactionStatus, TransactionType
from app.main import create_app
from app.models import Merchant, Transaction, new_id
from app.schemas import CreateTransactionRequest
from app.services.jobs import JobReaper
from app.services.processor import TransactionProcessor, generate_reference

TEST_DATABASE_URL = "sqlite://"

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
ACTIVE_MERCHANT = "merchant-active"
SUSPENDED_MERCHANT = "merchant-suspended"
OTHER_TENANT_MERCHANT = "merchant-other-tenant"

HIGH_RISK_NETWORK = "203.0.113.0/24"
VPN_NETWORK = "198.51.100.0/24"

# Wednesday, midday UTC: no time-of-day or weekend factors
WEDNESDAY_NOON = datetime(2025, 1, 15, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    test_engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def broken_session_factory():
    """Sessions on a database with no tables, so every statement fails."""
    empty_engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield build_session_factory(empty_engine)
    empty_engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def clock():
    return FrozenClock(WEDNESDAY_NOON)


@pytest.fixture
def settings():
    return Settings(
        run_reaper=False,
        run_recovery_on_startup=False,
        settlement_delay_seconds=1.0,
        refund_delay_seconds=2.0,
        stuck_refund_threshold_seconds=300,
        high_risk_networks=HIGH_RISK_NETWORK,
        vpn_networks=VPN_NETWORK,
    )


@pytest.fixture
def merchants(db_session):
    rows = [
        Merchant(id=ACTIVE_MERCHANT, tenant_id=TENANT, name="Active Merchant", country="US",
                 status=MerchantStatus.ACTIVE),
        Merchant(id=SUSPENDED_MERCHANT, tenant_id=TENANT, name="Suspended Merchant", country="US",
                 status=MerchantStatus.SUSPENDED),
        Merchant(id=OTHER_TENANT_MERCHANT, tenant_id=OTHER_TENANT, name="Other Tenant Merchant", country="GB",
                 status=MerchantStatus.ACTIVE),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture
def processor(session_factory, settings, clock, merchants):
    return TransactionProcessor(session_factory, settings=settings, clock=clock)


@pytest.fixture
def reaper(processor, session_factory, clock):
    return JobReaper(processor, session_factory, batch_size=10, clock=clock)


@pytest.fixture
def client(settings, session_factory, processor):
    app = create_app(settings=settings, session_factory=session_factory, processor=processor)
    with TestClient(app) as c:
        yield c


def payment_request(**overrides) -> CreateTransactionRequest:
    fields = {
        "payment_method": PaymentMethod.CREDIT_CARD,
        "amount": Decimal("100.00"),
        "merchant_id": ACTIVE_MERCHANT,
        "customer_email": "alice@example.com",
    }
    fields.update(overrides)
    return CreateTransactionRequest(**fields)


def make_transaction(db, **overrides) -> Transaction:
    """Insert a transaction row directly, bypassing the processor."""
    fields = {
        "id": new_id(),
        "reference": generate_reference(),
        "tenant_id": TENANT,
        "merchant_id": ACTIVE_MERCHANT,
        "type": TransactionType.PAYMENT,
        "status": TransactionStatus.COMPLETED,
        "payment_method": PaymentMethod.CREDIT_CARD,
        "amount": Decimal("50.00"),
        "fee_amount": Decimal("1.45"),
        "net_amount": Decimal("48.55"),
        "customer_email": "alice@example.com",
        "created_at": WEDNESDAY_NOON - timedelta(days=3),
        "updated_at": WEDNESDAY_NOON - timedelta(days=3),
    }
    fields.update(overrides)
    transaction = Transaction(**fields)
    db.add(transaction)
    db.commit()
    return transaction


def completed_payment(processor, amount=Decimal("100.00"), **overrides) -> Transaction:
    transaction = processor.process_transaction(payment_request(amount=amount, **overrides), TENANT)
    return processor.complete_transaction(transaction.id, TENANT)
