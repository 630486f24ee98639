import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from app.enums import PaymentMethod, Recommendation, RiskLevel, TransactionStatus, TransactionType
from app.services.risk_scorer import NetworkIpReputation, RiskScorer, classify_score, fraud_probability

from conftest import (
    HIGH_RISK_NETWORK,
    OTHER_TENANT,
    TENANT,
    VPN_NETWORK,
    FrozenClock,
    WEDNESDAY_NOON,
    make_transaction,
    payment_request,
)


@pytest.fixture
def scorer(session_factory, clock):
    reputation = NetworkIpReputation([HIGH_RISK_NETWORK], [VPN_NETWORK])
    return RiskScorer(session_factory, ip_reputation=reputation, clock=clock)


@pytest.mark.parametrize("score, level, recommendation", [
    (0, RiskLevel.LOW, Recommendation.APPROVE),
    (20, RiskLevel.LOW, Recommendation.APPROVE),
    (21, RiskLevel.MEDIUM, Recommendation.REVIEW),
    (50, RiskLevel.MEDIUM, Recommendation.REVIEW),
    (51, RiskLevel.HIGH, Recommendation.DECLINE),
    (133, RiskLevel.HIGH, Recommendation.DECLINE),
])
def test_classify_score_boundaries(score, level, recommendation):
    assert classify_score(score) == (level, recommendation)


def test_fraud_probability_is_capped():
    assert fraud_probability(0) == 0.0
    assert fraud_probability(58) == pytest.approx(0.58)
    assert fraud_probability(95) == pytest.approx(0.95)
    assert fraud_probability(140) == pytest.approx(0.95)


def test_first_time_customer_small_card_payment(scorer):
    assessment = scorer.assess_risk(payment_request(), TENANT)
    assert assessment.score == 11
    assert assessment.factors == ["STANDARD_PAYMENT_METHOD", "NEW_CUSTOMER"]
    assert assessment.level is RiskLevel.LOW
    assert assessment.recommendation is Recommendation.APPROVE


def test_large_crypto_payment_from_new_customer_is_declined(scorer):
    request = payment_request(amount=Decimal("15000.00"), payment_method=PaymentMethod.CRYPTOCURRENCY)
    assessment = scorer.assess_risk(request, TENANT)

    assert assessment.score >= 58
    assert {"HIGH_AMOUNT", "HIGH_RISK_PAYMENT_METHOD", "NEW_CUSTOMER"} <= set(assessment.factors)
    assert assessment.level is RiskLevel.HIGH
    assert assessment.recommendation is Recommendation.DECLINE
    assert assessment.fraud_probability == pytest.approx(assessment.score / 100)


@pytest.mark.parametrize("amount, points, tag", [
    (Decimal("1000.00"), 0, None),
    (Decimal("1000.01"), 10, "MEDIUM_AMOUNT"),
    (Decimal("10000.00"), 10, "MEDIUM_AMOUNT"),
    (Decimal("10000.01"), 30, "HIGH_AMOUNT"),
])
def test_amount_thresholds_are_strict(scorer, amount, points, tag):
    assessment = scorer.assess_risk(payment_request(amount=amount), TENANT)
    assert assessment.score == 11 + points
    if tag:
        assert assessment.factors[0] == tag
    else:
        assert "MEDIUM_AMOUNT" not in assessment.factors


@pytest.mark.parametrize("method, points, tag", [
    (PaymentMethod.CRYPTOCURRENCY, 20, "HIGH_RISK_PAYMENT_METHOD"),
    (PaymentMethod.DIGITAL_WALLET, 5, "MEDIUM_RISK_PAYMENT_METHOD"),
    (PaymentMethod.BANK_TRANSFER, 2, "LOW_RISK_PAYMENT_METHOD"),
    (PaymentMethod.CREDIT_CARD, 3, "STANDARD_PAYMENT_METHOD"),
    (PaymentMethod.DEBIT_CARD, 3, "STANDARD_PAYMENT_METHOD"),
])
def test_payment_method_points(scorer, method, points, tag):
    assessment = scorer.assess_risk(payment_request(payment_method=method), TENANT)
    assert assessment.score == points + 8
    assert tag in assessment.factors


def test_eleven_transactions_in_a_day_is_medium_day_velocity(scorer, db_session, merchants):
    for i in range(11):
        make_transaction(db_session, created_at=WEDNESDAY_NOON - timedelta(hours=2, minutes=i))

    assessment = scorer.assess_risk(payment_request(), TENANT)

    assert "MEDIUM_VELOCITY_DAY" in assessment.factors
    assert "MEDIUM_VELOCITY_HOUR" not in assessment.factors
    assert "NEW_CUSTOMER" not in assessment.factors
    assert assessment.score == 3 + 8


def test_hourly_velocity(scorer, db_session, merchants):
    for i in range(6):
        make_transaction(db_session, created_at=WEDNESDAY_NOON - timedelta(minutes=5 + i))

    assessment = scorer.assess_risk(payment_request(), TENANT)

    assert "HIGH_VELOCITY_HOUR" in assessment.factors
    assert "MEDIUM_VELOCITY_DAY" not in assessment.factors


def test_history_from_another_tenant_is_ignored(scorer, db_session, merchants):
    for i in range(12):
        make_transaction(
            db_session,
            tenant_id=OTHER_TENANT,
            merchant_id="merchant-other-tenant",
            status=TransactionStatus.FAILED,
            created_at=WEDNESDAY_NOON - timedelta(minutes=10 + i),
        )

    assessment = scorer.assess_risk(payment_request(), TENANT)
    assert assessment.factors == ["STANDARD_PAYMENT_METHOD", "NEW_CUSTOMER"]


def test_failure_and_chargeback_history(scorer, db_session, merchants):
    for _ in range(2):
        make_transaction(db_session, status=TransactionStatus.FAILED)
    make_transaction(db_session, type=TransactionType.CHARGEBACK)

    assessment = scorer.assess_risk(payment_request(), TENANT)

    assert "MEDIUM_FAILURE_RATE" in assessment.factors
    assert "CHARGEBACK_HISTORY" in assessment.factors
    assert "NEW_CUSTOMER" not in assessment.factors
    assert assessment.score == 3 + 5 + 25


def test_many_failures_is_high_failure_rate(scorer, db_session, merchants):
    for _ in range(4):
        make_transaction(db_session, status=TransactionStatus.FAILED)

    assessment = scorer.assess_risk(payment_request(), TENANT)
    assert "HIGH_FAILURE_RATE" in assessment.factors


def test_missing_email_skips_velocity_and_history(scorer):
    assessment = scorer.assess_risk(payment_request(customer_email=None), TENANT)
    assert assessment.factors == ["STANDARD_PAYMENT_METHOD", "NO_CUSTOMER_EMAIL"]
    assert assessment.score == 8


@pytest.mark.parametrize("ip_address, expected", [
    ("203.0.113.7", ["HIGH_RISK_COUNTRY"]),
    ("198.51.100.20", ["VPN_DETECTED"]),
    ("192.0.2.1", []),
    ("not-an-ip", []),
])
def test_geographic_risk(scorer, ip_address, expected):
    assessment = scorer.assess_risk(payment_request(ip_address=ip_address), TENANT)
    geo = [f for f in assessment.factors if f in ("HIGH_RISK_COUNTRY", "VPN_DETECTED")]
    assert geo == expected


def test_network_reputation_matches_both_lists():
    reputation = NetworkIpReputation(["10.0.0.0/8"], ["10.1.0.0/16"])
    assert reputation.is_high_risk_country("10.1.2.3")
    assert reputation.is_vpn("10.1.2.3")
    assert not reputation.is_vpn("10.2.0.1")


def test_late_night_weekend_factors(session_factory):
    saturday_night = datetime(2025, 1, 18, 23, 30, 0)
    scorer = RiskScorer(session_factory, clock=FrozenClock(saturday_night))

    assessment = scorer.assess_risk(payment_request(), TENANT)

    assert assessment.factors[-2:] == ["UNUSUAL_HOUR", "WEEKEND_TRANSACTION"]
    assert assessment.score == 3 + 8 + 5 + 3


def test_early_morning_is_unusual_hour(session_factory):
    scorer = RiskScorer(session_factory, clock=FrozenClock(datetime(2025, 1, 15, 5, 59, 0)))
    assert "UNUSUAL_HOUR" in scorer.assess_risk(payment_request(), TENANT).factors

    scorer = RiskScorer(session_factory, clock=FrozenClock(datetime(2025, 1, 15, 6, 0, 0)))
    assert "UNUSUAL_HOUR" not in scorer.assess_risk(payment_request(), TENANT).factors
