import random
from datetime import datetime, timedelta
from decimal import Decimal
from faker import Faker
from sqlalchemy.orm import Session

from app.enums import Currency, MerchantStatus, PaymentMethod, TransactionStatus, TransactionType
from app.models import AuditLog, Merchant, ScheduledJob, Transaction, new_id, utcnow
from app.services.processor import calculate_fee, generate_reference

fake = Faker()

TENANTS = ["tenant-acme", "tenant-globex"]
COUNTRIES = ["US", "GB", "DE", "CA", "AU"]
CURRENCIES = {"US": Currency.USD, "GB": Currency.GBP, "DE": Currency.EUR, "CA": Currency.CAD, "AU": Currency.AUD}
PAYMENT_METHODS = list(PaymentMethod)
PAYMENT_METHOD_WEIGHTS = [0.50, 0.25, 0.10, 0.12, 0.03]
STATUSES = [
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
]
STATUS_WEIGHTS = [0.86, 0.09, 0.05]
FAILURE_CODES = ["CARD_DECLINED", "INSUFFICIENT_FUNDS", "FRAUD_SUSPECTED"]

HISTORY_DAYS = 90
CUSTOMERS_PER_TENANT = 60
REFUND_SHARE = 0.05
CHARGEBACK_SHARE = 0.01


def _random_date(start: datetime, end: datetime) -> datetime:
    delta = end - start
    return start + timedelta(seconds=random.randint(0, int(delta.total_seconds())))


def _amount() -> Decimal:
    # Mostly small baskets with a long tail of large orders
    value = random.lognormvariate(4.0, 1.2)
    return Decimal(str(round(min(max(value, 1.0), 25000.0), 2)))


def run_seed(db: Session) -> dict:
    db.query(ScheduledJob).delete()
    db.query(AuditLog).delete()
    db.query(Transaction).delete()
    db.query(Merchant).delete()
    db.commit()

    merchants = _create_merchants(db)
    transactions = _create_transactions(db, merchants)
    refunds = _create_refunds(db, transactions)
    chargebacks = _create_chargebacks(db, transactions)

    return {
        "tenants": len(TENANTS),
        "merchants": len(merchants),
        "transactions": len(transactions),
        "refunds": len(refunds),
        "chargebacks": len(chargebacks),
    }


def _create_merchants(db: Session) -> list[Merchant]:
    merchants = []
    for tenant_id in TENANTS:
        for i in range(4):
            country = COUNTRIES[i % len(COUNTRIES)]
            merchants.append(Merchant(
                id=new_id(),
                tenant_id=tenant_id,
                name=f"{fake.company()} {country}",
                country=country,
                status=MerchantStatus.ACTIVE,
            ))
        merchants.append(Merchant(
            id=new_id(),
            tenant_id=tenant_id,
            name=f"{fake.company()} (suspended)",
            country="US",
            status=MerchantStatus.SUSPENDED,
        ))

    db.add_all(merchants)
    db.commit()
    return merchants


def _create_transactions(db: Session, merchants: list[Merchant]) -> list[Transaction]:
    end = utcnow()
    start = end - timedelta(days=HISTORY_DAYS)
    transactions = []

    for tenant_id in TENANTS:
        active = [m for m in merchants if m.tenant_id == tenant_id and m.status is MerchantStatus.ACTIVE]
        customers = [fake.unique.email() for _ in range(CUSTOMERS_PER_TENANT)]

        for merchant in active:
            for _ in range(random.randint(150, 250)):
                created_at = _random_date(start, end)
                payment_method = random.choices(PAYMENT_METHODS, PAYMENT_METHOD_WEIGHTS)[0]
                status = random.choices(STATUSES, STATUS_WEIGHTS)[0]
                amount = _amount()
                fee = calculate_fee(amount, payment_method)

                tx = Transaction(
                    id=new_id(),
                    reference=generate_reference(int(created_at.timestamp() * 1000)),
                    tenant_id=tenant_id,
                    merchant_id=merchant.id,
                    type=TransactionType.PAYMENT,
                    status=status,
                    payment_method=payment_method,
                    amount=amount,
                    fee_amount=fee,
                    net_amount=amount - fee,
                    currency=CURRENCIES[merchant.country],
                    description=fake.catch_phrase(),
                    customer_email=random.choice(customers),
                    customer_phone=fake.numerify("+1##########"),
                    ip_address=fake.ipv4_public(),
                    created_at=created_at,
                    updated_at=created_at,
                    processed_at=created_at + timedelta(seconds=1),
                )
                if status is TransactionStatus.COMPLETED:
                    tx.settled_at = tx.processed_at
                elif status is TransactionStatus.FAILED:
                    tx.failure_code = random.choice(FAILURE_CODES)
                    tx.failure_reason = fake.sentence(nb_words=6)
                elif status is TransactionStatus.CANCELLED:
                    tx.failure_reason = "Transaction cancelled by user"
                transactions.append(tx)

    db.add_all(transactions)
    db.commit()
    return transactions


def _create_refunds(db: Session, transactions: list[Transaction]) -> list[Transaction]:
    completed = [t for t in transactions if t.status is TransactionStatus.COMPLETED]
    refunds = []

    for parent in random.sample(completed, int(len(completed) * REFUND_SHARE)):
        partial = random.random() < 0.4
        amount = (parent.amount / 2).quantize(Decimal("0.01")) if partial else parent.amount
        if amount <= 0:
            continue
        parent.status = TransactionStatus.PARTIALLY_REFUNDED if partial else TransactionStatus.REFUNDED
        created_at = min(parent.created_at + timedelta(days=random.randint(1, 10)), utcnow())
        refunds.append(Transaction(
            id=new_id(),
            reference=generate_reference(int(created_at.timestamp() * 1000)),
            tenant_id=parent.tenant_id,
            merchant_id=parent.merchant_id,
            type=TransactionType.REFUND,
            status=TransactionStatus.COMPLETED,
            payment_method=parent.payment_method,
            amount=amount,
            fee_amount=Decimal("0.00"),
            net_amount=amount,
            currency=parent.currency,
            description=f"Refund for {parent.reference}: {fake.sentence(nb_words=4)}",
            customer_email=parent.customer_email,
            customer_phone=parent.customer_phone,
            parent_transaction_id=parent.reference,
            created_at=created_at,
            updated_at=created_at,
            processed_at=created_at,
            settled_at=created_at,
        ))

    db.add_all(refunds)
    db.commit()
    return refunds


def _create_chargebacks(db: Session, transactions: list[Transaction]) -> list[Transaction]:
    settled = [t for t in transactions if t.status is TransactionStatus.COMPLETED]
    chargebacks = []

    for original in random.sample(settled, max(1, int(len(settled) * CHARGEBACK_SHARE))):
        created_at = min(original.created_at + timedelta(days=random.randint(5, 30)), utcnow())
        chargebacks.append(Transaction(
            id=new_id(),
            reference=generate_reference(int(created_at.timestamp() * 1000)),
            tenant_id=original.tenant_id,
            merchant_id=original.merchant_id,
            type=TransactionType.CHARGEBACK,
            status=TransactionStatus.COMPLETED,
            payment_method=original.payment_method,
            amount=original.amount,
            fee_amount=Decimal("0.00"),
            net_amount=original.amount,
            currency=original.currency,
            description=f"Chargeback on {original.reference}",
            customer_email=original.customer_email,
            parent_transaction_id=original.reference,
            created_at=created_at,
            updated_at=created_at,
            processed_at=created_at,
            settled_at=created_at,
        ))

    db.add_all(chargebacks)
    db.commit()
    return chargebacks
