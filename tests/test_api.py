from datetime import timedelta
from fastapi.testclient import TestClient

from app.enums import TransactionStatus
from app.main import create_app
from app.services.processor import TransactionProcessor

from conftest import OTHER_TENANT, SUSPENDED_MERCHANT, TENANT

HEADERS = {"X-Tenant-ID": TENANT, "X-Actor-ID": "user-42"}


def _create(client, **overrides):
    body = {
        "payment_method": "credit_card",
        "amount": "100.00",
        "currency": "USD",
        "merchant_id": "merchant-active",
        "customer_email": "alice@example.com",
    }
    body.update(overrides)
    return client.post("/api/transactions", json=body, headers=HEADERS)


def _completed(client):
    created = _create(client).json()
    response = client.post(f"/api/transactions/{created['id']}/complete", headers=HEADERS)
    assert response.status_code == 200
    return response.json()


def test_seed_loads_data():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool
    from app.database import Base
    from scripts.seed_data import run_seed

    seed_engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=seed_engine)
    SeedSession = sessionmaker(bind=seed_engine)
    db = SeedSession()
    result = run_seed(db)
    db.close()

    assert result["tenants"] == 2
    assert result["merchants"] == 10
    assert result["transactions"] >= 1200
    assert result["refunds"] > 0
    assert result["chargebacks"] > 0


def test_create_transaction(client):
    response = _create(client, metadata={"order_id": "A-1"})
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["fee_amount"] == "2.90"
    assert data["net_amount"] == "97.10"
    assert data["tenant_id"] == TENANT
    assert data["created_by"] == "user-42"
    assert data["metadata"] == {"order_id": "A-1"}
    assert data["risk_assessment"]["recommendation"] == "approve"
    assert data["risk_assessment"]["factors"] == ["STANDARD_PAYMENT_METHOD", "NEW_CUSTOMER"]


def test_create_requires_tenant_header(client):
    response = client.post("/api/transactions", json={
        "payment_method": "credit_card", "amount": "10.00", "merchant_id": "merchant-active",
    })
    assert response.status_code == 422


def test_create_validates_body(client):
    assert _create(client, amount="0").status_code == 422
    assert _create(client, amount="1000000.00").status_code == 422
    assert _create(client, payment_method="cash").status_code == 422
    assert _create(client, customer_email="not-an-email").status_code == 422


def test_declined_transaction(client):
    response = _create(client, amount="15000.00", payment_method="cryptocurrency")
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "failed"
    assert data["failure_code"] == "FRAUD_SUSPECTED"
    assert data["risk_assessment"]["level"] == "high"


def test_suspended_merchant_is_conflict(client):
    response = _create(client, merchant_id=SUSPENDED_MERCHANT)
    assert response.status_code == 409
    assert response.json() == {"detail": "Merchant is not active"}


def test_refund_type_is_bad_request(client):
    assert _create(client, type="refund").status_code == 400


def test_get_by_id_and_reference(client):
    created = _create(client).json()

    by_id = client.get(f"/api/transactions/{created['id']}", headers=HEADERS)
    by_ref = client.get(f"/api/transactions/by-reference/{created['reference']}", headers=HEADERS)

    assert by_id.status_code == 200
    assert by_ref.status_code == 200
    assert by_id.json()["reference"] == by_ref.json()["reference"]


def test_other_tenant_sees_nothing(client):
    created = _create(client).json()
    other = {"X-Tenant-ID": OTHER_TENANT}

    response = client.get(f"/api/transactions/{created['id']}", headers=other)
    assert response.status_code == 404
    assert response.json() == {"detail": "Transaction not found"}
    assert client.get("/api/transactions", headers=other).json()["total"] == 0


def test_list_transactions(client):
    _create(client)
    _create(client, customer_email="bob@example.com", amount="15000.00", payment_method="cryptocurrency")

    response = client.get("/api/transactions", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["total"] == 2

    failed = client.get("/api/transactions?status=failed", headers=HEADERS).json()
    assert failed["total"] == 1
    assert failed["items"][0]["customer_email"] == "bob@example.com"

    page = client.get("/api/transactions?limit=1&offset=1", headers=HEADERS).json()
    assert page["limit"] == 1
    assert page["offset"] == 1
    assert len(page["items"]) == 1


def test_list_rejects_bad_limit(client):
    assert client.get("/api/transactions?limit=0", headers=HEADERS).status_code == 422
    assert client.get("/api/transactions?limit=501", headers=HEADERS).status_code == 422


def test_partial_refund_flow(client):
    parent = _completed(client)

    response = client.post(
        f"/api/transactions/{parent['reference']}/refund",
        json={"amount": "30.00", "reason": "damaged"},
        headers=HEADERS,
    )
    assert response.status_code == 201
    refund = response.json()
    assert refund["type"] == "refund"
    assert refund["status"] == "processing"
    assert refund["fee_amount"] == "0.00"
    assert refund["parent_transaction_id"] == parent["reference"]

    parent_now = client.get(f"/api/transactions/{parent['id']}", headers=HEADERS).json()
    assert parent_now["status"] == "partially_refunded"

    again = client.post(
        f"/api/transactions/{parent['reference']}/refund",
        json={"amount": "10.00", "reason": "more"},
        headers=HEADERS,
    )
    assert again.status_code == 409


def test_refund_over_amount_is_bad_request(client):
    parent = _completed(client)

    response = client.post(
        f"/api/transactions/{parent['reference']}/refund",
        json={"amount": "100.01", "reason": "too much"},
        headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.json() == {"detail": "Refund amount cannot exceed original amount"}
    parent_now = client.get(f"/api/transactions/{parent['id']}", headers=HEADERS).json()
    assert parent_now["status"] == "completed"


def test_refund_unknown_reference(client):
    response = client.post(
        "/api/transactions/TXN_NOPE_000000/refund",
        json={"amount": "1.00", "reason": "n/a"},
        headers=HEADERS,
    )
    assert response.status_code == 404


def test_cancel_twice(client):
    created = _create(client).json()
    url = f"/api/transactions/{created['id']}/cancel"

    first = client.post(url, json={"reason": "duplicate order"}, headers=HEADERS)
    second = client.post(url, json={}, headers=HEADERS)

    assert first.status_code == 200
    assert first.json()["status"] == "cancelled"
    assert first.json()["failure_reason"] == "duplicate order"
    assert second.status_code == 409


def test_fail_reviewed_transaction(client):
    created = _create(client, amount="5000.00", payment_method="cryptocurrency").json()
    assert created["status"] == "processing"

    response = client.post(
        f"/api/transactions/{created['id']}/fail",
        json={"failure_code": "MANUAL_REVIEW", "failure_reason": "Rejected by analyst"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert response.json()["failure_code"] == "MANUAL_REVIEW"


def test_audit_trail(client):
    created = _create(client).json()
    client.post(f"/api/transactions/{created['id']}/cancel", json={}, headers=HEADERS)

    response = client.get(f"/api/transactions/{created['id']}/audit", headers=HEADERS)
    assert response.status_code == 200
    entries = response.json()
    assert [e["action"] for e in entries] == ["create", "update"]
    assert entries[1]["metadata"] == {"reason": "Transaction cancelled by user"}
    assert all(e["actor_id"] == "user-42" for e in entries)


def test_reaper_settles_api_created_payment(client, clock):
    created = _create(client).json()

    client.app.state.reaper.run_once(clock() + timedelta(seconds=2))

    settled = client.get(f"/api/transactions/{created['id']}", headers=HEADERS).json()
    assert settled["status"] == TransactionStatus.COMPLETED.value
    assert settled["settled_at"] is not None


def test_reads_are_unavailable_when_store_is_down(settings, session_factory, broken_session_factory, clock):
    processor = TransactionProcessor(broken_session_factory, settings=settings, clock=clock)
    app = create_app(settings=settings, session_factory=session_factory, processor=processor)

    with TestClient(app) as c:
        listing = c.get("/api/transactions", headers=HEADERS)
        single = c.get("/api/transactions/missing", headers=HEADERS)
        by_reference = c.get("/api/transactions/by-reference/TXN_MISSING_000000", headers=HEADERS)
        audit = c.get("/api/transactions/missing/audit", headers=HEADERS)

    for response in (listing, single, by_reference, audit):
        assert response.status_code == 503
        assert response.json()["detail"].startswith("Transaction store unavailable")
