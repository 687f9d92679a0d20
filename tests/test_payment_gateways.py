"""
Unit tests for the PawaPay and XentriPay gateways
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from src.core.exceptions import MethodNotSupported, MissingPhoneNumber
from src.database.models import PaymentStatus, PaymentType
from src.services.payment_gateways import (
    GatewayCharge,
    GatewayError,
    GatewayReferenceUnknown,
    GatewayRegistry,
    PawaPayGateway,
    XentriPayGateway,
)


def make_charge(**kwargs) -> GatewayCharge:
    values = dict(
        reference="0b6a5b0e-4a1c-4b57-9c55-2f1f0c3f6d11",
        unlock_id="unlock-1772366400000-abc123xyz",
        user_id=7,
        property_id=42,
        property_name="Kacyiru Garden Apartment",
        amount_local=8000,
        amount_usd=Decimal("6.15"),
        currency="RWF",
        customer_email="guest@example.com",
        customer_name="Eric Mugisha",
        customer_phone="0788123123",
        payer_phone="0788123123",
        momo_provider="MTN",
        country_code="RW",
        redirect_url="https://jambolush.test/properties/42/unlock-success",
    )
    values.update(kwargs)
    return GatewayCharge(**values)


@pytest.fixture
def pawapay():
    return PawaPayGateway(api_url="https://pawapay.test/", api_token="token")


@pytest.fixture
def xentripay():
    return XentriPayGateway(base_url="https://xentripay.test", api_key="key")


# ===========================
# PAWAPAY
# ===========================


@pytest.mark.parametrize(
    "provider, country, expected",
    [
        ("MTN", "RW", "MTN_MOMO_RWA"),
        ("airtel", "UG", "AIRTEL_UGA"),
        (None, None, "MTN_MOMO_RWA"),
        ("ORANGE", "SN", "ORANGE_SEN"),
    ],
)
def test_operator_code(provider, country, expected):
    assert PawaPayGateway.operator_code(provider, country) == expected


def test_statement_description_is_clipped():
    description = PawaPayGateway.statement_description("Nyarutarama Executive Villa")

    assert description.startswith("Unlock: ")
    assert len(description) == 22


def test_statement_description_fallback():
    assert PawaPayGateway.statement_description("") == "Property unlock"


def test_pawapay_reference_is_uuid(pawapay):
    import uuid
    from datetime import datetime, UTC

    reference = pawapay.make_reference(7, 42, datetime(2026, 3, 1, tzinfo=UTC))

    assert uuid.UUID(reference).version == 4


def test_pawapay_validate_charge(pawapay):
    pawapay.validate_charge(make_charge())

    with pytest.raises(MissingPhoneNumber):
        pawapay.validate_charge(make_charge(payer_phone=None))

    with pytest.raises(MethodNotSupported):
        pawapay.validate_charge(make_charge(momo_provider="SAFARICOM"))


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("ACCEPTED", PaymentStatus.SUBMITTED),
        ("completed", PaymentStatus.COMPLETED),
        ("REJECTED", PaymentStatus.FAILED),
        ("CANCELLED", PaymentStatus.FAILED),
        ("SOMETHING_NEW", None),
        (None, None),
    ],
)
def test_pawapay_status_mapping(pawapay, raw, expected):
    assert pawapay.normalize_status(raw) == expected


@pytest.mark.asyncio
async def test_pawapay_dispatch_payload(pawapay):
    charge = make_charge()
    request = AsyncMock(return_value=(200, {"depositId": charge.reference, "status": "ACCEPTED"}))

    with patch.object(pawapay, "_request", request):
        dispatch = await pawapay.dispatch(charge)

    assert dispatch.status == PaymentStatus.SUBMITTED
    assert dispatch.provider_reference == charge.reference

    method, path, payload = request.call_args.args
    assert (method, path) == ("POST", "/deposits")
    assert payload["depositId"] == charge.reference
    assert payload["amount"] == "8000"
    assert payload["payer"]["accountDetails"] == {
        "phoneNumber": "250788123123",
        "provider": "MTN_MOMO_RWA",
    }
    assert payload["statementDescription"] == "Unlock: Kacyiru Garden"
    assert payload["metadata"] == [
        {"fieldName": "unlockId", "fieldValue": charge.unlock_id, "isPII": False},
        {"fieldName": "propertyId", "fieldValue": str(charge.property_id), "isPII": False},
        {"fieldName": "userId", "fieldValue": str(charge.user_id), "isPII": True},
    ]


@pytest.mark.asyncio
async def test_pawapay_dispatch_rejected(pawapay):
    body = {"depositId": "x", "status": "REJECTED", "rejectionReason": {"rejectionCode": "PAYER_NOT_FOUND"}}

    with patch.object(pawapay, "_request", AsyncMock(return_value=(200, body))):
        with pytest.raises(GatewayError, match="PAYER_NOT_FOUND"):
            await pawapay.dispatch(make_charge())


@pytest.mark.asyncio
async def test_pawapay_dispatch_http_error(pawapay):
    with patch.object(pawapay, "_request", AsyncMock(return_value=(400, {"errorMessage": "bad"}))):
        with pytest.raises(GatewayError):
            await pawapay.dispatch(make_charge())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, expected",
    [
        ([{"depositId": "d1", "status": "COMPLETED"}], PaymentStatus.COMPLETED),
        ({"status": "FOUND", "data": {"depositId": "d1", "status": "FAILED"}}, PaymentStatus.FAILED),
        ({"depositId": "d1", "status": "SUBMITTED"}, PaymentStatus.SUBMITTED),
    ],
)
async def test_pawapay_fetch_status_versions(pawapay, body, expected):
    with patch.object(pawapay, "_request", AsyncMock(return_value=(200, body))):
        assert await pawapay.fetch_status("d1") == expected


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [(200, []), (200, {"status": "NOT_FOUND"}), (404, {})])
async def test_pawapay_fetch_status_unknown(pawapay, response):
    with patch.object(pawapay, "_request", AsyncMock(return_value=response)):
        with pytest.raises(GatewayReferenceUnknown):
            await pawapay.fetch_status("d1")


# ===========================
# XENTRIPAY
# ===========================


def test_xentripay_provider_label(xentripay):
    assert xentripay.provider_label(make_charge()) == "XENTRIPAY_CARD"


@pytest.mark.asyncio
async def test_xentripay_dispatch(xentripay):
    body = {"success": 1, "refid": 98765, "url": "https://xentripay.test/pay/98765", "reply": "OK"}
    request = AsyncMock(return_value=(200, body))

    with patch.object(xentripay, "_request", request):
        dispatch = await xentripay.dispatch(make_charge(amount_local=333450, amount_usd=Decimal("256.50")))

    assert dispatch.status == PaymentStatus.PENDING
    assert dispatch.provider_reference == "98765"
    assert dispatch.payment_url == "https://xentripay.test/pay/98765"

    method, path, payload = request.call_args.args
    assert (method, path) == ("POST", "/api/collections/initiate")
    assert payload["amount"] == 333450
    assert payload["currency"] == "RWF"
    assert not any("usd" in key.lower() for key in payload)
    assert payload["description"].endswith("($256.50)")
    assert payload["pmethod"] == "cc"
    assert payload["cnumber"] == "0788123123"
    assert payload["msisdn"] == "250788123123"
    assert payload["redirecturl"] == "https://jambolush.test/properties/42/unlock-success"


@pytest.mark.asyncio
async def test_xentripay_dispatch_uses_placeholder_phone(xentripay):
    body = {"success": 1, "refid": "r1", "url": "https://xentripay.test/pay/r1"}
    request = AsyncMock(return_value=(200, body))

    with patch.object(xentripay, "_request", request):
        await xentripay.dispatch(make_charge(customer_phone=None))

    payload = request.call_args.args[2]
    assert payload["cnumber"] == "0788123456"
    assert payload["msisdn"] == "250788123456"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        (200, {"success": 0, "reply": "Invalid amount"}),
        (200, {"success": 1}),
        (500, {"raw": "Internal Server Error"}),
    ],
)
async def test_xentripay_dispatch_failures(xentripay, response):
    with patch.object(xentripay, "_request", AsyncMock(return_value=response)):
        with pytest.raises(GatewayError):
            await xentripay.dispatch(make_charge())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, expected",
    [
        ({"status": "SUCCESS"}, PaymentStatus.COMPLETED),
        ({"data": {"status": "FAILED"}}, PaymentStatus.FAILED),
        ({"status": "PENDING"}, PaymentStatus.PENDING),
        ({"status": "REVERSED"}, None),
    ],
)
async def test_xentripay_fetch_status(xentripay, body, expected):
    with patch.object(xentripay, "_request", AsyncMock(return_value=(200, body))):
        assert await xentripay.fetch_status("r1") == expected


@pytest.mark.asyncio
async def test_xentripay_fetch_status_unknown(xentripay):
    with patch.object(xentripay, "_request", AsyncMock(return_value=(404, {}))):
        with pytest.raises(GatewayReferenceUnknown):
            await xentripay.fetch_status("r1")


# ===========================
# REGISTRY
# ===========================


def test_registry_lookup(pawapay, xentripay):
    registry = GatewayRegistry.of(pawapay, xentripay)

    assert registry.get(PaymentType.MOMO) is pawapay
    assert registry.get("cc") is xentripay
    assert PaymentType.MOMO in registry

    with pytest.raises(GatewayError):
        registry.get(PaymentType.DEAL_CODE)
    with pytest.raises(GatewayError):
        registry.get("paypal")
