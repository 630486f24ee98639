"""
Additive fraud-risk scoring.

The score is a plain sum of fixed point contributions; every contribution
appends a tag to the factor list so the decision can be audited later.
Thresholds live in app.constants.
"""
import ipaddress
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

import structlog
from sqlalchemy.orm import sessionmaker

from app.config import Settings
from app.constants import (
    HIGH_AMOUNT_THRESHOLD,
    LOW_RISK_MAX_SCORE,
    MAX_FRAUD_PROBABILITY,
    MEDIUM_AMOUNT_THRESHOLD,
    MEDIUM_RISK_MAX_SCORE,
)
from app.enums import PaymentMethod, Recommendation, RiskLevel, TransactionStatus, TransactionType
from app.models import utcnow
from app.schemas import CreateTransactionRequest, RiskAssessment
from app.store import TransactionStore

logger = structlog.get_logger(__name__)

Contribution = Tuple[int, List[str]]

PAYMENT_METHOD_RISK = {
    PaymentMethod.CRYPTOCURRENCY: (20, "HIGH_RISK_PAYMENT_METHOD"),
    PaymentMethod.DIGITAL_WALLET: (5, "MEDIUM_RISK_PAYMENT_METHOD"),
    PaymentMethod.BANK_TRANSFER: (2, "LOW_RISK_PAYMENT_METHOD"),
}
DEFAULT_PAYMENT_METHOD_RISK = (3, "STANDARD_PAYMENT_METHOD")


class IpReputation(Protocol):
    def is_high_risk_country(self, ip_address: str) -> bool: ...

    def is_vpn(self, ip_address: str) -> bool: ...


class NetworkIpReputation:
    """Deterministic IP lookup against configured CIDR blocks."""

    def __init__(self, high_risk_networks: Iterable[str] = (), vpn_networks: Iterable[str] = ()):
        self._high_risk = [ipaddress.ip_network(n, strict=False) for n in high_risk_networks]
        self._vpn = [ipaddress.ip_network(n, strict=False) for n in vpn_networks]

    @classmethod
    def from_settings(cls, settings: Settings) -> "NetworkIpReputation":
        return cls(settings.get_high_risk_networks(), settings.get_vpn_networks())

    def is_high_risk_country(self, ip_address: str) -> bool:
        return self._matches(ip_address, self._high_risk)

    def is_vpn(self, ip_address: str) -> bool:
        return self._matches(ip_address, self._vpn)

    @staticmethod
    def _matches(ip_address: str, networks) -> bool:
        try:
            address = ipaddress.ip_address(ip_address.strip())
        except ValueError:
            return False
        return any(address in network for network in networks)


def classify_score(score: int) -> Tuple[RiskLevel, Recommendation]:
    if score <= LOW_RISK_MAX_SCORE:
        return RiskLevel.LOW, Recommendation.APPROVE
    if score <= MEDIUM_RISK_MAX_SCORE:
        return RiskLevel.MEDIUM, Recommendation.REVIEW
    return RiskLevel.HIGH, Recommendation.DECLINE


def fraud_probability(score: int) -> float:
    return min(score / 100, MAX_FRAUD_PROBABILITY)


class RiskScorer:
    def __init__(
        self,
        session_factory: sessionmaker,
        ip_reputation: Optional[IpReputation] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._ip_reputation = ip_reputation or NetworkIpReputation()
        self._clock = clock

    def assess_risk(self, request: CreateTransactionRequest, tenant_id: str) -> RiskAssessment:
        now = self._clock()
        score = 0
        factors: List[str] = []

        if request.customer_email:
            with self._session_factory() as db:
                store = TransactionStore(db)
                velocity = self._velocity_risk(store, request.customer_email, tenant_id, now)
                history = self._customer_history_risk(store, request.customer_email, tenant_id)
        else:
            velocity = (0, [])
            history = (5, ["NO_CUSTOMER_EMAIL"])

        checks: List[Contribution] = [
            self._amount_risk(request),
            velocity,
            self._payment_method_risk(request.payment_method),
            self._geographic_risk(request.ip_address),
            history,
            self._time_risk(now),
        ]
        for points, tags in checks:
            score += points
            factors.extend(tags)

        level, recommendation = classify_score(score)
        assessment = RiskAssessment(
            score=score,
            level=level,
            factors=factors,
            fraud_probability=fraud_probability(score),
            recommendation=recommendation,
        )

        logger.info(
            "risk_assessed",
            tenant_id=tenant_id,
            merchant_id=request.merchant_id,
            payment_method=request.payment_method.value,
            score=score,
            level=level.value,
            recommendation=recommendation.value,
            factors=factors,
        )
        return assessment

    @staticmethod
    def _amount_risk(request: CreateTransactionRequest) -> Contribution:
        if request.amount > HIGH_AMOUNT_THRESHOLD:
            return 30, ["HIGH_AMOUNT"]
        if request.amount > MEDIUM_AMOUNT_THRESHOLD:
            return 10, ["MEDIUM_AMOUNT"]
        return 0, []

    @staticmethod
    def _velocity_risk(store: TransactionStore, email: str, tenant_id: str, now: datetime) -> Contribution:
        score = 0
        factors: List[str] = []

        last_hour = store.count_for_customer(tenant_id, email, since=now - timedelta(hours=1))
        if last_hour > 5:
            score += 25
            factors.append("HIGH_VELOCITY_HOUR")
        elif last_hour > 2:
            score += 10
            factors.append("MEDIUM_VELOCITY_HOUR")

        last_day = store.count_for_customer(tenant_id, email, since=now - timedelta(hours=24))
        if last_day > 20:
            score += 20
            factors.append("HIGH_VELOCITY_DAY")
        elif last_day > 10:
            score += 8
            factors.append("MEDIUM_VELOCITY_DAY")

        return score, factors

    @staticmethod
    def _payment_method_risk(payment_method: PaymentMethod) -> Contribution:
        points, tag = PAYMENT_METHOD_RISK.get(payment_method, DEFAULT_PAYMENT_METHOD_RISK)
        return points, [tag]

    def _geographic_risk(self, ip_address: Optional[str]) -> Contribution:
        if not ip_address:
            return 0, []

        score = 0
        factors: List[str] = []
        if self._ip_reputation.is_high_risk_country(ip_address):
            score += 15
            factors.append("HIGH_RISK_COUNTRY")
        if self._ip_reputation.is_vpn(ip_address):
            score += 10
            factors.append("VPN_DETECTED")
        return score, factors

    @staticmethod
    def _customer_history_risk(store: TransactionStore, email: str, tenant_id: str) -> Contribution:
        score = 0
        factors: List[str] = []

        failed = store.count_for_customer(tenant_id, email, status=TransactionStatus.FAILED)
        if failed > 3:
            score += 15
            factors.append("HIGH_FAILURE_RATE")
        elif failed > 1:
            score += 5
            factors.append("MEDIUM_FAILURE_RATE")

        if store.count_for_customer(tenant_id, email, type=TransactionType.CHARGEBACK) > 0:
            score += 25
            factors.append("CHARGEBACK_HISTORY")

        if store.count_for_customer(tenant_id, email) == 0:
            score += 8
            factors.append("NEW_CUSTOMER")

        return score, factors

    @staticmethod
    def _time_risk(now: datetime) -> Contribution:
        score = 0
        factors: List[str] = []

        if now.hour < 6 or now.hour > 22:
            score += 5
            factors.append("UNUSUAL_HOUR")

        # Monday is 0; Saturday and Sunday are 5 and 6
        if now.weekday() >= 5:
            score += 3
            factors.append("WEEKEND_TRANSACTION")

        return score, factors
