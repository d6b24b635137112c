"""Tests for the QRIS callback endpoint."""
import time

import pytest
from fastapi.testclient import TestClient

from qris_shop.models import PaymentKind, PaymentStatus
from qris_shop.webhook import create_app, parse_notification, signature


@pytest.fixture
def deposit(registry):
    code = registry.claim("DEPOSIT-2-1", 10000)
    return registry.open("DEPOSIT-2-1", PaymentKind.DEPOSIT, 2, 10000, code)


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine)) as client:
        yield client


def test_matched_notification_applies(client, deposit, accounts, registry):
    resp = client.post("/api/qris-callback", json={"amount": deposit.payable_total, "reference": "trx-1"})

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "status": "applied"}
    assert accounts.balance(2) == 15_000
    assert registry.get(deposit.id).status is PaymentStatus.SETTLED


def test_replay_is_acknowledged(client, deposit, accounts):
    body = {"amount": str(deposit.payable_total), "reference": "trx-1"}
    client.post("/api/qris-callback", json=body)
    resp = client.post("/api/qris-callback", json=body)

    assert resp.status_code == 200
    assert resp.json()["status"] == "duplicate_ignored"
    assert accounts.balance(2) == 15_000


def test_unmatched_is_acknowledged(client, deposit, registry):
    resp = client.post("/api/qris-callback", json={"amount": 10000, "reference": "trx-1"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "unmatched"
    assert registry.get(deposit.id).status is PaymentStatus.OPEN


@pytest.mark.parametrize(
    "body",
    [
        {"reference": "trx-1"},
        {"amount": 10123},
        {"amount": "10123.5", "reference": "trx-1"},
        {"amount": "abc", "reference": "trx-1"},
        {"amount": -5, "reference": "trx-1"},
        {"amount": True, "reference": "trx-1"},
        {"amount": "1e2000000", "reference": "trx-1"},
        {"amount": 1e300, "reference": "trx-1"},
        ["not", "an", "object"],
    ],
)
def test_malformed_body_rejected(client, body):
    assert client.post("/api/qris-callback", json=body).status_code == 400


def test_invalid_json_rejected(client):
    resp = client.post("/api/qris-callback", content=b"{nope", headers={"content-type": "application/json"})

    assert resp.status_code == 400


def test_store_outage_asks_for_retry(client, deposit, accounts, registry):
    accounts.close()

    resp = client.post("/api/qris-callback", json={"amount": deposit.payable_total, "reference": "trx-1"})

    assert resp.status_code == 503
    assert registry.get(deposit.id).status is PaymentStatus.OPEN


def test_signature_required_when_configured(engine, deposit, accounts):
    body = {"amount": deposit.payable_total, "reference": "trx-1"}
    with TestClient(create_app(engine, webhook_secret="s3cret")) as client:
        bad = client.post("/api/qris-callback", json={**body, "signature": "deadbeef"})
        good = client.post("/api/qris-callback", json={**body, "signature": signature(body, "s3cret")})

    assert bad.status_code == 401
    assert good.status_code == 200
    assert good.json()["status"] == "applied"
    assert accounts.balance(2) == 15_000


def test_health_reports_open_requests(client, deposit):
    assert client.get("/health").json() == {"ok": True, "open_requests": 1}


def test_huge_exponent_rejected_quickly():
    started = time.monotonic()
    with pytest.raises(ValueError):
        parse_notification({"amount": "1e2000000", "reference": "trx-1"})

    assert time.monotonic() - started < 1


def test_largest_amount_accepted():
    assert parse_notification({"amount": "999999999999999", "reference": "trx-1"}).amount == 999_999_999_999_999
    with pytest.raises(ValueError):
        parse_notification({"amount": 10**15, "reference": "trx-1"})


def test_parse_notification_accepts_decimal_string():
    note = parse_notification({"amount": "10123.00", "reference": " trx-7 "})

    assert note.amount == 10123
    assert note.reference == "trx-7"
