"""
API tests for unlock endpoints and payment webhooks
"""
import hashlib
import hmac
import json
import pytest
from types import SimpleNamespace

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api import unlock as unlock_api
from src.api.auth import get_current_user
from src.api.errors import register_exception_handlers
from src.api.router import router as api_router
from src.database.crud import get_unlock_by_unlock_id
from src.database.engine import get_session
from src.database.models import User
from src.services.exchange_rate_service import ExchangeRateUnavailable
from src.services.payment_gateways import GatewayError, GatewayRegistry
from src.services.unlock_orchestrator import UnlockOrchestrator, get_unlock_orchestrator


WEBHOOK_SECRET = "whsec-test"
API_KEY = "internal-test-key"


class CurrentUser:
    """Switchable authenticated user for dependency overrides"""

    def __init__(self):
        self.user = None

    def __call__(self):
        return self.user


@pytest.fixture
def current_user(guest):
    holder = CurrentUser()
    holder.user = SimpleNamespace(id=guest.id, email=guest.email)
    return holder


@pytest.fixture
def app(db_session, orchestrator, current_user):
    app = FastAPI()
    app.state.limiter = unlock_api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    async def session_override():
        yield db_session

    app.dependency_overrides[get_session] = session_override
    app.dependency_overrides[get_unlock_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_current_user] = current_user

    unlock_api.limiter.reset()
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture(autouse=True)
def webhook_secrets(monkeypatch):
    monkeypatch.setattr("src.api.webhooks_payments.PAWAPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr("src.api.webhooks_payments.XENTRIPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr("src.api.webhooks_payments.ENVIRONMENT", "development")
    monkeypatch.setattr("src.api.api_key_auth.INTERNAL_API_KEY", API_KEY)


def signed(payload: dict):
    body = json.dumps(payload).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return body, signature


MOMO_BODY = {
    "payment_method": "non_refundable_fee",
    "payment_type": "momo",
    "phone_number": "0788123123",
    "momo_provider": "MTN",
    "country_code": "RW",
}


async def initiate(client, property_id, **overrides):
    body = {**MOMO_BODY, "property_id": property_id, **overrides}
    return await client.post("/api/unlocks/initiate", json=body)


# ===========================
# UNLOCK ENDPOINTS
# ===========================


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "hit_rate" in response.json()["cache"]


@pytest.mark.asyncio
async def test_fee_is_public(app, client, monthly_property):
    del app.dependency_overrides[get_current_user]

    response = await client.get(f"/api/unlocks/{monthly_property.id}/fee")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["methods"]["non_refundable_fee"]["amount_local"] == 8000
    assert data["recommended_method"] == "three_month_30_percent"


@pytest.mark.asyncio
async def test_initiate_and_complete_over_webhook(client, monthly_property):
    property_id = monthly_property.id

    response = await initiate(client, property_id, payment_amount="1")
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"]
    assert payload["message"] == "Unlock payment initiated"
    assert payload["data"]["amount_local"] == 8000
    reference = payload["data"]["transaction_reference"]

    status = (await client.get(f"/api/unlocks/{property_id}/status")).json()
    assert status["data"]["is_unlocked"] is False
    assert "address" not in status["data"]

    body, signature = signed({"depositId": reference, "status": "COMPLETED", "amount": "8000"})
    webhook = await client.post(
        "/api/webhooks/pawapay",
        content=body,
        headers={"Content-Type": "application/json", "X-PawaPay-Signature": signature},
    )
    assert webhook.status_code == 200
    assert webhook.json() == {"status": "ok"}

    status = (await client.get(f"/api/unlocks/{property_id}/status")).json()
    assert status["message"] == "Property unlocked"
    assert status["data"]["address"] == "KG 7 Ave 12, Kacyiru, Kigali"


@pytest.mark.asyncio
async def test_repeat_initiation_reports_existing(client, monthly_property):
    await initiate(client, monthly_property.id)
    response = await initiate(client, monthly_property.id)

    assert response.json()["message"] == "Unlock payment already in progress"
    assert response.json()["data"]["is_existing"] is True


@pytest.mark.asyncio
async def test_domain_errors_use_envelope(client, nightly_property):
    response = await initiate(client, nightly_property.id)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"] == "method_not_supported"

    response = await initiate(client, 99999)
    assert response.status_code == 404
    assert response.json()["error"] == "property_not_found"


@pytest.mark.asyncio
async def test_dispatch_failure_returns_502(client, momo_gateway, monthly_property):
    momo_gateway.script.dispatch_error = GatewayError("payer not found")

    response = await initiate(client, monthly_property.id)

    assert response.status_code == 502
    payload = response.json()
    assert payload["error"] == "gateway_dispatch_failed"
    assert payload["data"]["payment_status"] == "FAILED"
    assert payload["data"]["unlock_id"].startswith("unlock-")


@pytest.mark.asyncio
async def test_rate_unavailable_returns_503(
    app, client, momo_gateway, card_gateway, ledger, notifier, clock, monthly_property
):
    class NoRates:
        async def get_rate(self, base="USD", quote="RWF"):
            raise ExchangeRateUnavailable("feed down")

    app.dependency_overrides[get_unlock_orchestrator] = lambda: UnlockOrchestrator(
        rate_provider=NoRates(),
        gateways=GatewayRegistry.of(momo_gateway, card_gateway),
        ledger=ledger,
        notifier=notifier,
        clock=clock,
    )

    response = await initiate(client, monthly_property.id)

    assert response.status_code == 503
    assert response.json()["error"] == "exchange_rate_unavailable"
    assert momo_gateway.script.charges == []


@pytest.mark.asyncio
async def test_request_validation(client, monthly_property):
    response = await initiate(client, monthly_property.id, payment_method="half_price")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_other_users_payment_status(client, current_user, other_guest, monthly_property):
    unlock_id = (await initiate(client, monthly_property.id)).json()["data"]["unlock_id"]
    current_user.user = SimpleNamespace(id=other_guest.id, email=other_guest.email)

    response = await client.get(f"/api/unlocks/payments/{unlock_id}")

    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"


@pytest.mark.asyncio
async def test_validate_unknown_deal_code(client):
    response = await client.post("/api/unlocks/deal-codes/validate", json={"code": "UNLOCK-1-NOPE"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"] == "not_found"
    assert payload["message"] == "Deal code does not exist"


@pytest.mark.asyncio
async def test_cancel_and_list_deal_codes(client, monthly_property):
    property_id = monthly_property.id
    started = (await initiate(client, property_id, payment_method="three_month_30_percent")).json()["data"]

    await client.post(
        "/api/webhooks/payment-callback",
        json={"reference": started["transaction_reference"], "status": "COMPLETED"},
        headers={"X-API-Key": API_KEY},
    )

    cancelled = await client.post(f"/api/unlocks/{started['unlock_id']}/cancel", json={"reason": "Too far"})
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["refund_eligible"] is True

    codes = (await client.get("/api/unlocks/deal-codes")).json()["data"]
    assert codes["total"] == 1
    assert codes["deal_codes"][0]["code"] == cancelled.json()["data"]["deal_code"]["code"]

    again = await client.post(f"/api/unlocks/{started['unlock_id']}/cancel", json={})
    assert again.status_code == 409
    assert again.json()["error"] == "already_cancelled"


# ===========================
# WEBHOOKS
# ===========================


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client, db_session, monthly_property):
    started = (await initiate(client, monthly_property.id)).json()["data"]
    body, _ = signed({"depositId": started["transaction_reference"], "status": "COMPLETED"})

    missing = await client.post("/api/webhooks/pawapay", content=body)
    forged = await client.post(
        "/api/webhooks/pawapay", content=body, headers={"X-PawaPay-Signature": "0" * 64}
    )

    assert missing.status_code == 403
    assert forged.status_code == 403
    record = await get_unlock_by_unlock_id(db_session, started["unlock_id"])
    assert record.payment_status == "SUBMITTED"


@pytest.mark.asyncio
async def test_webhook_without_secret_in_production(client, monkeypatch):
    monkeypatch.setattr("src.api.webhooks_payments.PAWAPAY_WEBHOOK_SECRET", "")
    monkeypatch.setattr("src.api.webhooks_payments.ENVIRONMENT", "production")

    response = await client.post("/api/webhooks/pawapay", json={"depositId": "x", "status": "COMPLETED"})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_webhook_acknowledges_unknown_reference(client):
    body, signature = signed({"depositId": "does-not-exist", "status": "COMPLETED"})

    response = await client.post(
        "/api/webhooks/pawapay", content=body, headers={"X-PawaPay-Signature": signature}
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_xentripay_success_callback(client, db_session, monthly_property):
    started = (
        await initiate(client, monthly_property.id, payment_type="cc", payment_method="three_month_30_percent")
    ).json()["data"]
    assert started["payment_url"] == "https://xentripay.test/pay/abc"

    body, signature = signed({"refid": started["transaction_reference"], "status": "SUCCESS"})
    response = await client.post(
        "/api/webhooks/xentripay", content=body, headers={"X-XentriPay-Signature": signature}
    )

    assert response.status_code == 200
    record = await get_unlock_by_unlock_id(db_session, started["unlock_id"])
    assert record.payment_status == "COMPLETED"


@pytest.mark.asyncio
async def test_payment_callback_requires_api_key(client, monthly_property):
    started = (await initiate(client, monthly_property.id)).json()["data"]
    callback = {"reference": started["transaction_reference"], "status": "completed"}

    assert (await client.post("/api/webhooks/payment-callback", json=callback)).status_code == 401
    assert (
        await client.post("/api/webhooks/payment-callback", json=callback, headers={"X-API-Key": "wrong"})
    ).status_code == 401

    response = await client.post("/api/webhooks/payment-callback", json=callback, headers={"X-API-Key": API_KEY})
    assert response.status_code == 200

    status = await client.get(f"/api/unlocks/payments/{started['unlock_id']}")
    assert status.json()["data"]["payment_status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_admin_analytics_requires_api_key(client, monthly_property):
    await initiate(client, monthly_property.id)

    assert (await client.get("/api/unlocks/admin/analytics")).status_code == 401

    response = await client.get(
        "/api/unlocks/admin/analytics", params={"status": "submitted"}, headers={"X-API-Key": API_KEY}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["overview"]["total_unlocks"] == 1
    assert len(data["unlocks"]) == 1


# ===========================
# AUTHENTICATION
# ===========================


@pytest.fixture
def jwt_auth(app, monkeypatch):
    """Use the real JWT dependency instead of the override"""
    monkeypatch.setattr("src.api.auth.NEXTAUTH_SECRET", "jwt-test-secret")
    del app.dependency_overrides[get_current_user]

    def token_for(email):
        return "Bearer " + jwt.encode({"email": email}, "jwt-test-secret", algorithm="HS256")

    return token_for


@pytest.mark.asyncio
async def test_jwt_authentication(client, jwt_auth, guest):
    response = await client.get("/api/unlocks/mine", headers={"Authorization": jwt_auth("guest@example.com")})

    assert response.status_code == 200
    assert response.json()["data"]["total"] == 0


@pytest.mark.asyncio
async def test_jwt_authentication_failures(client, db_session, jwt_auth, guest):
    assert (await client.get("/api/unlocks/mine")).status_code == 422
    assert (
        await client.get("/api/unlocks/mine", headers={"Authorization": "Token abc"})
    ).status_code == 401
    assert (
        await client.get("/api/unlocks/mine", headers={"Authorization": "Bearer not-a-jwt"})
    ).status_code == 401
    assert (
        await client.get("/api/unlocks/mine", headers={"Authorization": jwt_auth("nobody@example.com")})
    ).status_code == 404

    banned = User(email="banned@example.com", is_banned=True)
    db_session.add(banned)
    await db_session.commit()
    assert (
        await client.get("/api/unlocks/mine", headers={"Authorization": jwt_auth("banned@example.com")})
    ).status_code == 403
