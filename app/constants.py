from decimal import Decimal

from app.enums import PaymentMethod, TransactionStatus

FEE_RATES = {
    PaymentMethod.CREDIT_CARD: Decimal("0.029"),
    PaymentMethod.DEBIT_CARD: Decimal("0.015"),
    PaymentMethod.BANK_TRANSFER: Decimal("0.005"),
    PaymentMethod.DIGITAL_WALLET: Decimal("0.025"),
    PaymentMethod.CRYPTOCURRENCY: Decimal("0.01"),
}
DEFAULT_FEE_RATE = Decimal("0.025")
CENT = Decimal("0.01")

REFERENCE_PREFIX = "TXN"
FRAUD_SUSPECTED = "FRAUD_SUSPECTED"
FRAUD_DECLINE_REASON = "Transaction declined due to high fraud risk"
DEFAULT_CANCEL_REASON = "Transaction cancelled by user"

# Risk bucketing: score <= LOW_RISK_MAX_SCORE is low, <= MEDIUM_RISK_MAX_SCORE is medium.
LOW_RISK_MAX_SCORE = 20
MEDIUM_RISK_MAX_SCORE = 50
MAX_FRAUD_PROBABILITY = 0.95

HIGH_AMOUNT_THRESHOLD = Decimal("10000")
MEDIUM_AMOUNT_THRESHOLD = Decimal("1000")

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.PROCESSING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
    },
    TransactionStatus.COMPLETED: {
        TransactionStatus.REFUNDED,
        TransactionStatus.PARTIALLY_REFUNDED,
    },
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(TransactionStatus(current), set())
