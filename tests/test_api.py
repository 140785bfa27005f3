import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from app.main import app as fastapi_app
from app.database import Base, get_db
from app.models import AffiliateCommission, PaymentProviderConfig, PaymentTransaction
import app.auth

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("AFFILIATE_COMMISSION_RATE", raising=False)
    fastapi_app.dependency_overrides[get_db] = override_get_db
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[app.auth.verify_token] = lambda: {"sub": "user-1"}
    fastapi_app.dependency_overrides[app.auth.require_admin] = lambda: {"sub": "admin", "role": "admin"}
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def seed_stripe_config(**config):
    db = TestingSessionLocal()
    db.add(PaymentProviderConfig(
        provider="stripe",
        is_active=True,
        config={"secret_key": "sk_test_123", "public_key": "pk_test_123", **config},
    ))
    db.commit()
    db.close()


def seed_transaction(status="pending", amount="100.00", raw_payload=None, provider_reference=None):
    db = TestingSessionLocal()
    tx = PaymentTransaction(
        user_id="user-1", item_type="plan", item_id="Monthly plan",
        amount=Decimal(amount), currency="BRL", provider="stripe", status=status,
        raw_payload=raw_payload, provider_reference=provider_reference,
    )
    db.add(tx)
    db.commit()
    tx_id = tx.id
    db.close()
    return tx_id


def checkout_payload(**overrides):
    payload = {
        "user_id": "user-1",
        "item_type": "plan",
        "item_id": "Monthly plan",
        "amount": 100.00,
        "currency": "brl",
        "provider": "stripe",
        "success_url": "http://localhost:5173/billing",
        "cancel_url": "http://localhost:5173/billing",
    }
    payload.update(overrides)
    return payload


def count_commissions():
    db = TestingSessionLocal()
    count = db.query(AffiliateCommission).count()
    db.close()
    return count


def test_create_checkout_success(client, mocker):
    seed_stripe_config()
    mock_session = mocker.Mock()
    mock_session.id = "cs_test_123"
    mock_session.url = "https://checkout.stripe.com/c/pay/cs_test_123"
    mock_session.metadata = {"referral_code": "aff_1"}
    create = mocker.patch("app.payments.create_checkout_session", return_value=mock_session)

    response = client.post("/payments/checkout", json=checkout_payload(referral_code="aff_1"))

    assert response.status_code == 200
    body = response.json()
    assert body["checkout_url"] == "https://checkout.stripe.com/c/pay/cs_test_123"
    assert body["provider"] == "stripe"

    kwargs = create.call_args.kwargs
    assert create.call_args.args[0] == "sk_test_123"
    assert kwargs["unit_amount"] == 10000
    assert kwargs["currency"] == "BRL"
    assert kwargs["metadata"]["tx_id"] == body["transaction_id"]
    assert kwargs["metadata"]["referral_code"] == "aff_1"
    assert kwargs["success_url"].endswith(f"?txId={body['transaction_id']}")

    db = TestingSessionLocal()
    tx = db.get(PaymentTransaction, body["transaction_id"])
    assert tx.status == "pending"
    assert tx.currency == "BRL"
    assert tx.amount == Decimal("100.00")
    assert tx.provider_reference == "cs_test_123"
    assert tx.raw_payload["checkout_session_metadata"] == {"referral_code": "aff_1"}
    db.close()


def test_checkout_rejects_unsupported_provider(client, mocker):
    seed_stripe_config()
    create = mocker.patch("app.payments.create_checkout_session")

    response = client.post("/payments/checkout", json=checkout_payload(provider="paypal"))

    assert response.status_code == 400
    create.assert_not_called()


def test_checkout_rejects_missing_or_inactive_config(client, mocker):
    create = mocker.patch("app.payments.create_checkout_session")

    response = client.post("/payments/checkout", json=checkout_payload())
    assert response.status_code == 400

    db = TestingSessionLocal()
    db.add(PaymentProviderConfig(provider="stripe", is_active=True, config={"secret_key": "sk_test_123"}))
    db.commit()
    db.close()

    response = client.post("/payments/checkout", json=checkout_payload())
    assert response.status_code == 400
    assert response.json()["detail"] == "Stripe keys are not configured correctly."
    create.assert_not_called()


def test_checkout_below_minimum_rejected_before_provider_call(client, mocker):
    seed_stripe_config()
    create = mocker.patch("app.payments.create_checkout_session")

    response = client.post("/payments/checkout", json=checkout_payload(amount=0.49))

    assert response.status_code == 400
    assert "minimum" in response.json()["detail"]
    create.assert_not_called()

    db = TestingSessionLocal()
    assert db.query(PaymentTransaction).count() == 0
    db.close()


def test_checkout_minimum_comes_from_provider_config(client, mocker):
    seed_stripe_config(minimum_amounts={"BRL": 500})
    create = mocker.patch("app.payments.create_checkout_session")

    response = client.post("/payments/checkout", json=checkout_payload(amount=4.99))

    assert response.status_code == 400
    create.assert_not_called()


def test_checkout_provider_error_is_forwarded(client, mocker):
    seed_stripe_config()
    mocker.patch(
        "app.payments.create_checkout_session",
        side_effect=stripe.InvalidRequestError("Amount must be at least 50 centavos", "amount"),
    )

    response = client.post("/payments/checkout", json=checkout_payload())

    assert response.status_code == 400
    assert "at least 50 centavos" in response.json()["detail"]

    db = TestingSessionLocal()
    tx = db.query(PaymentTransaction).one()
    assert tx.status == "failed"
    assert "checkout_error" in tx.raw_payload
    db.close()


def test_confirm_marks_paid_and_creates_commission(client):
    tx_id = seed_transaction(raw_payload={
        "checkout_session_id": "cs_test_1",
        "checkout_session_metadata": {"tx_id": "x", "referral_code": "aff_1", "user_id": "user-1"},
    })

    response = client.post("/payments/confirm", json={"txId": tx_id})

    assert response.status_code == 200
    assert response.json()["status"] == "paid"
    assert response.json()["raw_payload"]["manual_confirm"] is True

    db = TestingSessionLocal()
    commission = db.query(AffiliateCommission).one()
    assert commission.amount == Decimal("20.00")
    assert commission.affiliate_code == "aff_1"
    assert commission.referred_user_id == "user-1"
    db.close()


def test_confirm_twice_is_idempotent(client):
    tx_id = seed_transaction(raw_payload={"checkout_session_metadata": {"referral_code": "aff_1"}})

    first = client.post("/payments/confirm", json={"tx_id": tx_id})
    second = client.post("/payments/confirm", json={"tx_id": tx_id})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "paid"
    assert count_commissions() == 1


def test_confirm_recovers_metadata_from_stripe(client, mocker):
    seed_stripe_config()
    tx_id = seed_transaction(provider_reference="cs_test_42")
    mock_session = mocker.Mock()
    mock_session.metadata = {"tx_id": tx_id, "referralCode": "aff_legacy"}
    retrieve = mocker.patch("app.payments.retrieve_checkout_session", return_value=mock_session)

    response = client.post("/payments/confirm", json={"txId": tx_id})

    assert response.status_code == 200
    retrieve.assert_called_once_with("sk_test_123", "cs_test_42")
    assert response.json()["raw_payload"]["checkout_session_metadata"]["referralCode"] == "aff_legacy"

    db = TestingSessionLocal()
    assert db.query(AffiliateCommission).one().affiliate_code == "aff_legacy"
    db.close()


def test_confirm_survives_stripe_retrieval_failure(client, mocker):
    seed_stripe_config()
    tx_id = seed_transaction(provider_reference="cs_test_42")
    mocker.patch(
        "app.payments.retrieve_checkout_session",
        side_effect=stripe.APIConnectionError("network down"),
    )

    response = client.post("/payments/confirm", json={"txId": tx_id})

    assert response.status_code == 200
    assert response.json()["status"] == "paid"
    assert count_commissions() == 0


def test_confirm_unknown_transaction(client):
    response = client.post("/payments/confirm", json={"txId": "does-not-exist"})

    assert response.status_code == 404


def test_list_transactions(client):
    seed_transaction()
    seed_transaction(status="paid")

    response = client.get("/payments/list")

    assert response.status_code == 200
    assert len(response.json()) == 2


def test_webhook_unsupported_event_is_ignored(client):
    tx_id = seed_transaction()

    response = client.post("/payments/webhook", json={
        "type": "payment_intent.created",
        "data": {"object": {"metadata": {"tx_id": tx_id}}},
    })

    assert response.status_code == 200
    assert response.json() == {"ignored": True, "reason": "unsupported_event_type", "type": "payment_intent.created"}

    db = TestingSessionLocal()
    assert db.get(PaymentTransaction, tx_id).status == "pending"
    db.close()


def test_webhook_unknown_transaction_is_ignored(client):
    response = client.post("/payments/webhooks/stripe", json={
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_1", "metadata": {"tx_id": "missing", "referral_code": "aff_1"}}},
    })

    assert response.status_code == 200
    assert response.json() == {"ignored": True, "reason": "transaction_not_found", "tx_id": "missing"}
    assert count_commissions() == 0


@pytest.mark.parametrize("event, reason", [
    ({"type": "checkout.session.completed", "data": {}}, "missing_session_object"),
    ({"type": "checkout.session.completed", "data": {"object": {"id": "cs_1", "metadata": {}}}}, "missing_transaction_id"),
    ({"type": "checkout.session.completed", "data": {"object": {"id": "cs_1", "metadata": ["tx-1"]}}}, "missing_transaction_id"),
    ({"type": "checkout.session.completed", "data": {"object": {"id": "cs_1", "metadata": "tx-1"}}}, "missing_transaction_id"),
])
def test_webhook_incomplete_events_are_ignored(client, event, reason):
    response = client.post("/payments/webhook", json=event)

    assert response.status_code == 200
    assert response.json()["reason"] == reason


def test_webhook_completed_marks_paid_once(client):
    tx_id = seed_transaction()
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_1", "metadata": {"tx_id": tx_id, "referral_code": "aff_1"}}},
    }

    first = client.post("/payments/webhook", json=event)
    second = client.post("/payments/webhook", json=event)

    assert first.json() == {"processed": True, "tx_id": tx_id, "status": "paid"}
    assert second.json()["processed"] is True
    assert count_commissions() == 1

    db = TestingSessionLocal()
    tx = db.get(PaymentTransaction, tx_id)
    assert tx.status == "paid"
    # Redeliveries are appended, not overwritten
    assert [e["id"] for e in tx.raw_payload["stripe_webhooks"]] == ["evt_1", "evt_1"]
    db.close()


def test_webhook_storage_error_propagates(client, mocker):
    tx_id = seed_transaction()
    mocker.patch(
        "app.payments.derive_commission",
        side_effect=OperationalError("INSERT INTO affiliate_commissions", {}, Exception("database is locked")),
    )
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_1", "metadata": {"tx_id": tx_id, "referral_code": "aff_1"}}},
    }

    with TestClient(fastapi_app, raise_server_exceptions=False) as failing_client:
        response = failing_client.post("/payments/webhook", json=event)

    # A 5xx makes Stripe retry the delivery
    assert response.status_code == 500
    assert count_commissions() == 0


def stripe_signature_header(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_completed_event(tx_id):
    return json.dumps({
        "id": "evt_signed",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_1", "metadata": {"tx_id": tx_id, "referral_code": "aff_1"}}},
    }).encode("utf-8")


def test_webhook_with_valid_signature_is_processed(client, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    tx_id = seed_transaction()
    payload = signed_completed_event(tx_id)

    response = client.post(
        "/payments/webhook",
        content=payload,
        headers={"stripe-signature": stripe_signature_header(payload, "whsec_test", int(time.time()))}
    )

    assert response.status_code == 200
    assert response.json() == {"processed": True, "tx_id": tx_id, "status": "paid"}
    assert count_commissions() == 1


def test_webhook_invalid_signature(client, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    tx_id = seed_transaction()
    payload = signed_completed_event(tx_id)

    response = client.post(
        "/payments/webhook",
        content=payload,
        headers={"stripe-signature": stripe_signature_header(payload, "whsec_other", int(time.time()))}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_webhook_replayed_signature_is_rejected(client, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    tx_id = seed_transaction()
    payload = signed_completed_event(tx_id)
    day_old = int(time.time()) - 86400

    response = client.post(
        "/payments/webhook",
        content=payload,
        headers={"stripe-signature": stripe_signature_header(payload, "whsec_test", day_old)}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"

    db = TestingSessionLocal()
    assert db.get(PaymentTransaction, tx_id).status == "pending"
    db.close()
    assert count_commissions() == 0


def test_webhook_missing_signature_when_secret_configured(client, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")

    response = client.post("/payments/webhook", content=signed_completed_event("tx-1"))

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing signature"


def test_webhook_invalid_payload(client):
    response = client.post("/payments/webhook", content=b"not json")

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_manual_commission_for_paid_transaction(client):
    tx_id = seed_transaction(status="paid", amount="50.00")

    response = client.post("/payments/admin/affiliate-commission", json={
        "txId": tx_id,
        "affiliate_code": "aff_manual",
        "referred_user_name": "Ana",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["created"] is True
    assert Decimal(body["commission"]["amount"]) == Decimal("10.00")
    assert body["commission"]["metadata"]["referred_user_name"] == "Ana"

    again = client.post("/payments/admin/affiliate-commission", json={"txId": tx_id, "affiliate_code": "other"})
    assert again.json()["created"] is False
    assert again.json()["commission"]["affiliate_code"] == "aff_manual"


def test_manual_commission_rejects_unpaid_transaction(client):
    tx_id = seed_transaction()

    response = client.post("/payments/admin/affiliate-commission", json={"txId": tx_id, "affiliate_code": "aff"})

    assert response.status_code == 400
    assert count_commissions() == 0
