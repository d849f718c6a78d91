import pytest
from jose import jwt

from config import settings
from services.session_token import (
    LEDGER_AUDIENCE,
    LEDGER_TOKEN_TYPE,
    create_payments_token,
    create_session_token,
    decode_ledger_token,
)


USER_ID = "tenant-a"


@pytest.mark.asyncio
async def test_balance_requires_session_token(client):
    response = await client.get("/billing/balance")
    assert response.status_code == 401

    response = await client.get("/billing/balance", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_balance_rejects_cross_tenant_query(client, auth_headers):
    response = await client.get("/billing/balance", params={"user_id": "tenant-b"}, headers=auth_headers(USER_ID))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_new_tenant_balance_is_zero(client, auth_headers):
    response = await client.get("/billing/balance", headers=auth_headers(USER_ID))
    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == USER_ID
    assert body["remaining_credits"] == 0.0
    assert body["status"] == "critical"


@pytest.mark.asyncio
async def test_packages_are_public(client):
    response = await client.get("/billing/packages")
    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == ["free-trial", "starter", "growth", "pro"]


@pytest.mark.asyncio
async def test_purchase_is_idempotent_on_payment_reference(client, auth_headers, payments_headers, sink):
    payload = {
        "user_id": USER_ID,
        "package_id": "starter",
        "package_name": "Starter",
        "credits": 100,
        "price": 19,
        "payment_method": "card",
        "payment_reference": "pay_abc",
    }
    first = await client.post("/billing/purchases", json=payload, headers=payments_headers)
    second = await client.post("/billing/purchases", json=payload, headers=payments_headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["payment_reference"] == "pay_abc"

    balance = await client.get("/billing/balance", headers=auth_headers(USER_ID))
    assert balance.json()["remaining_credits"] == 100.0
    assert balance.json()["total_credits_purchased"] == 100.0
    assert balance.json()["estimated_minutes_remaining"] == 100
    assert len(sink.of_kind("purchase_recorded")) == 1


@pytest.mark.asyncio
async def test_purchase_validation(client, payments_headers):
    response = await client.post(
        "/billing/purchases",
        json={"user_id": USER_ID, "package_id": "x", "package_name": "X", "credits": 0, "price": 1},
        headers=payments_headers,
    )
    assert response.status_code == 422

    response = await client.post(
        "/billing/purchases/package",
        json={"package_id": "starter"},
        headers=payments_headers,
    )
    assert response.status_code == 422

    response = await client.post(
        "/billing/purchases/package",
        json={"user_id": USER_ID, "package_id": "platinum"},
        headers=payments_headers,
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "validation_error"

    trial = await client.post(
        "/billing/purchases/package",
        json={"user_id": USER_ID, "package_id": "free-trial"},
        headers=payments_headers,
    )
    assert trial.status_code == 422


@pytest.mark.asyncio
async def test_tenant_cannot_record_its_own_purchase(client, auth_headers):
    custom = await client.post(
        "/billing/purchases",
        json={"user_id": USER_ID, "package_id": "x", "package_name": "X", "credits": 1_000_000, "price": 0},
        headers=auth_headers(USER_ID),
    )
    assert custom.status_code == 403

    package = await client.post(
        "/billing/purchases/package",
        json={"user_id": USER_ID, "package_id": "pro"},
        headers=auth_headers(USER_ID),
    )
    assert package.status_code == 403

    balance = await client.get("/billing/balance", headers=auth_headers(USER_ID))
    assert balance.json()["remaining_credits"] == 0.0


@pytest.mark.asyncio
async def test_payments_token_cannot_read_tenant_ledgers(client, payments_headers):
    response = await client.get("/billing/balance", params={"user_id": USER_ID}, headers=payments_headers)
    assert response.status_code == 403

    unsigned = await client.post(
        "/billing/purchases/package",
        json={"user_id": USER_ID, "package_id": "starter"},
    )
    assert unsigned.status_code == 401


@pytest.mark.asyncio
async def test_package_purchase_and_history(client, auth_headers, payments_headers):
    bought = await client.post(
        "/billing/purchases/package",
        json={"user_id": USER_ID, "package_id": "growth", "payment_reference": "pay_growth"},
        headers=payments_headers,
    )
    assert bought.status_code == 200
    assert bought.json()["credits"] == 2000.0
    assert bought.json()["user_id"] == USER_ID

    trial = await client.post("/billing/trial", headers=auth_headers(USER_ID))
    again = await client.post("/billing/trial", headers=auth_headers(USER_ID))
    assert trial.json()["id"] == again.json()["id"]

    history = await client.get("/billing/purchases", headers=auth_headers(USER_ID))
    assert history.status_code == 200
    body = history.json()
    assert len(body["purchases"]) == 2
    assert body["total_credits_purchased"] == 2100.0

    other = await client.get("/billing/purchases", headers=auth_headers("tenant-b"))
    assert other.json() == {"purchases": [], "total_credits_purchased": 0.0}


@pytest.mark.asyncio
async def test_health_endpoints(client):
    live = await client.get("/health/live")
    assert live.json() == {"alive": True}


def test_ledger_token_scopes():
    tenant = decode_ledger_token(create_session_token(USER_ID, email="a@example.com")["token"])
    assert tenant.subject == USER_ID
    assert tenant.is_tenant and not tenant.is_payment_collaborator
    assert tenant.email == "a@example.com"

    collaborator = decode_ledger_token(create_payments_token("payments-webhook")["token"])
    assert collaborator.subject == "payments-webhook"
    assert collaborator.is_payment_collaborator

    forged = jwt.encode(
        {"sub": USER_ID, "scope": "admin", "aud": LEDGER_AUDIENCE, "type": LEDGER_TOKEN_TYPE},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError):
        decode_ledger_token(forged)
