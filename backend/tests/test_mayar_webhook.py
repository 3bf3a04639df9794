import hashlib
import hmac
import json

import main
from conftest import ADMIN_HEADERS, transactions_of, wallet_of

SECRET = "mayar-test-secret"


def signed_post(client, payload, secret=SECRET, signature=None):
    body = json.dumps(payload).encode("utf-8")
    if signature is None:
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    headers = {"Content-Type": "application/json"}
    if signature:
        headers["X-Mayar-Signature"] = signature
    return client.post("/payments/mayar/webhook", content=body, headers=headers)


def paid_payload(**data):
    base = {"id": "trx-001", "status": "SUCCESS", "amount": 28500}
    base.update(data)
    return {"event": {"received": "payment.received"}, "data": base}


def latest_webhook_event():
    return main.collect_recent_rows("webhook_events", 1)[0]


def test_rejects_missing_signature(client, make_user):
    user = make_user()

    response = signed_post(client, paid_payload(custom_field_1=str(user.id)), signature="")

    assert response.status_code == 401
    assert response.json()["result"] == "invalid_signature"
    assert wallet_of(user.id) == (5, 0)
    event = latest_webhook_event()
    assert event["signature_present"] == 0
    assert event["result"] == "invalid_signature"
    assert event["http_status"] == 401


def test_rejects_signature_from_wrong_secret(client, make_user):
    user = make_user()

    response = signed_post(client, paid_payload(custom_field_1=str(user.id)), secret="wrong")

    assert response.status_code == 401
    assert wallet_of(user.id) == (5, 0)


def test_returns_503_without_configured_secret(client, monkeypatch):
    monkeypatch.setattr(main, "MAYAR_WEBHOOK_SECRET", "")

    response = signed_post(client, paid_payload(), signature="abc")

    assert response.status_code == 503


def test_rejects_invalid_json(client):
    response = client.post("/payments/mayar/webhook", content=b"{not json", headers={"X-Mayar-Signature": "abc"})

    assert response.status_code == 400


def test_acknowledges_testing_event(client):
    response = signed_post(client, {"event": "testing", "data": {}})

    assert response.status_code == 200
    assert response.json()["result"] == "testing"


def test_ignores_unpaid_status(client, make_user):
    user = make_user()

    response = signed_post(client, paid_payload(status="PENDING", custom_field_1=str(user.id)))

    assert response.status_code == 200
    assert response.json()["result"] == "unpaid_ignored"
    assert wallet_of(user.id) == (5, 0)


def test_credits_tokens_from_amount_for_custom_field_user(client, make_user):
    user = make_user()

    response = signed_post(client, paid_payload(custom_field_1=str(user.id), customerId="cus-9"))

    assert response.status_code == 200
    assert response.json()["result"] == "paid_processed"
    assert wallet_of(user.id) == (5, 3)
    purchase = transactions_of(user.id)[-1]
    assert purchase["type"] == "PURCHASE"
    assert purchase["amount"] == 3
    assert purchase["external_ref"] == "mayar:trx-001"
    assert main.fetch_user_by_id(user.id)["mayar_customer_id"] == "cus-9"
    event = latest_webhook_event()
    assert event["processed"] == 1
    assert event["signature_valid"] == 1
    assert event["user_id"] == user.id


def test_prefers_explicit_credit_and_custom_field_list(client, make_user):
    user = make_user()
    payload = paid_payload(
        status=True,
        credit=12,
        custom_field=[{"key": "other", "value": "x"}, {"key": "custom_field_1", "value": str(user.id)}],
    )

    response = signed_post(client, payload)

    assert response.json()["result"] == "paid_processed"
    assert wallet_of(user.id) == (5, 12)


def test_falls_back_to_customer_email(client, make_user):
    user = make_user("buyer@example.com")

    response = signed_post(client, paid_payload(customer={"email": "Buyer@Example.com"}))

    assert response.json()["result"] == "paid_processed"
    assert wallet_of(user.id) == (5, 3)


def test_duplicate_transaction_credits_once(client, make_user):
    user = make_user()
    payload = paid_payload(custom_field_1=str(user.id))

    first = signed_post(client, payload)
    second = signed_post(client, payload)

    assert first.json()["result"] == "paid_processed"
    assert second.status_code == 200
    assert second.json()["result"] == "duplicate_ignored"
    assert wallet_of(user.id) == (5, 3)


def test_small_payment_is_processed_without_credit(client, make_user):
    user = make_user()

    response = signed_post(client, paid_payload(amount=5000, custom_field_1=str(user.id)))

    assert response.json()["result"] == "paid_no_credit"
    assert wallet_of(user.id) == (5, 0)


def test_missing_identifier_returns_400(client):
    response = signed_post(client, paid_payload())

    assert response.status_code == 400
    assert response.json()["result"] == "missing_identifier"


def test_unknown_user_returns_400(client):
    response = signed_post(client, paid_payload(custom_field_1="99999", customerEmail="ghost@example.com"))

    assert response.status_code == 400
    assert response.json()["result"] == "user_not_found"


def test_admin_can_list_webhook_events(client, make_user):
    signed_post(client, {"event": "testing", "data": {}})

    response = client.get("/admin/webhook-events", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    events = response.json()["webhook_events"]
    assert events[0]["provider"] == "mayar"
    assert events[0]["payload"]["event"] == "testing"


def test_payment_config_exposes_price(client):
    response = client.get("/payments/config")

    assert response.status_code == 200
    assert response.json()["price_per_token"] == main.MAYAR_PRICE_PER_TOKEN


def test_non_ascii_signature_is_rejected_not_crashed(client, make_user):
    user = make_user()
    body = json.dumps(paid_payload(custom_field_1=str(user.id))).encode("utf-8")

    response = client.post(
        "/payments/mayar/webhook",
        content=body,
        headers=[("Content-Type", "application/json"), ("X-Mayar-Signature", b"caf\xe9")],
    )

    assert response.status_code == 401
    assert response.json()["result"] == "invalid_signature"
    assert wallet_of(user.id) == (5, 0)
    assert latest_webhook_event()["result"] == "invalid_signature"
