# coding: utf-8
"""
XentriPay card gateway

Creates a hosted card collection and hands back the payment page URL.
XentriPay assigns its own reference (refid); callbacks and status polls use it.

API: POST /api/collections/initiate, GET /api/collections/status/{refid}
"""
import logging  # Needed for tenacity before_sleep_log level constants
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.config import XENTRIPAY_BASE_URL, XENTRIPAY_API_KEY, XENTRIPAY_TIMEOUT
from config.unlock_pricing import DEFAULT_PRICING
from src.database.models import CARD_PROVIDER, PaymentStatus, PaymentType
from src.services.payment_gateways.base import (
    GatewayCharge,
    GatewayDispatch,
    GatewayError,
    GatewayReferenceUnknown,
    GatewayTimeout,
    PaymentGateway,
)
from src.utils.phone_numbers import to_international_format, to_local_format


class XentriPayGateway(PaymentGateway):
    """Hosted-page card collections through XentriPay"""

    rail = PaymentType.CARD
    name = "XentriPay"

    STATUS_MAP = {
        "SUCCESS": PaymentStatus.COMPLETED,
        "COMPLETED": PaymentStatus.COMPLETED,
        "PENDING": PaymentStatus.PENDING,
        "FAILED": PaymentStatus.FAILED,
    }

    def __init__(
        self,
        base_url: str = XENTRIPAY_BASE_URL,
        api_key: str = XENTRIPAY_API_KEY,
        timeout: int = XENTRIPAY_TIMEOUT,
        placeholder_phone: str = DEFAULT_PRICING.placeholder_phone,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.placeholder_phone = placeholder_phone

        if not self.api_key:
            logger.warning("XENTRIPAY_API_KEY not configured - card collections will be rejected")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "X-XENTRIPAY-KEY": self.api_key,
            "Content-Type": "application/json",
        }

    def provider_label(self, charge: GatewayCharge) -> str:
        return CARD_PROVIDER

    def normalize_status(self, raw_status: Optional[str]) -> Optional[PaymentStatus]:
        if not raw_status:
            return None
        return self.STATUS_MAP.get(raw_status.upper())

    async def initiate_collection(
        self,
        customer_email: str,
        customer_name: str,
        amount: int,
        amount_usd: Decimal,
        phone_local: str,
        phone_intl: str,
        currency: str,
        reference: str,
        redirect_url: Optional[str],
        description: str,
    ) -> Dict[str, Any]:
        """
        Create a hosted card collection

        Wire contract: `amount` is the whole local-currency amount recorded
        on the unlock and `currency` is the local currency (RWF). XentriPay
        charges in local units and takes no USD field; `amount_usd` is only
        echoed in the description.

        Returns:
            {"refid", "url", "tid", "reply", ...}

        Raises:
            GatewayTimeout, GatewayError
        """
        payload = {
            "email": customer_email,
            "cname": customer_name,
            "amount": int(amount),
            "cnumber": phone_local,
            "msisdn": phone_intl,
            "currency": currency,
            "pmethod": "cc",
            "chargesIncluded": "true",
            "description": f"{description} (${amount_usd})",
            "internalReference": reference,
            "redirecturl": redirect_url,
        }

        status, body = await self._request("POST", "/api/collections/initiate", payload)

        if status >= 400 or not isinstance(body, dict):
            raise GatewayError(f"XentriPay collection rejected (HTTP {status}): {body}")

        if body.get("success") != 1 or not body.get("refid"):
            raise GatewayError(f"XentriPay collection failed: {body.get('reply') or body}")

        return body

    async def dispatch(self, charge: GatewayCharge) -> GatewayDispatch:
        phone_local = to_local_format(charge.customer_phone, self.placeholder_phone)
        phone_intl = to_international_format(phone_local)

        body = await self.initiate_collection(
            customer_email=charge.customer_email,
            customer_name=charge.customer_name,
            amount=charge.amount_local,
            amount_usd=charge.amount_usd,
            phone_local=phone_local,
            phone_intl=phone_intl,
            currency=charge.currency,
            reference=charge.reference,
            redirect_url=charge.redirect_url,
            description=f"Address unlock - {charge.property_name}"[:100],
        )

        logger.info(
            f"XentriPay collection created for {charge.reference}: refid={body['refid']}, "
            f"amount={charge.amount_local} {charge.currency}"
        )

        return GatewayDispatch(
            status=PaymentStatus.PENDING,
            provider_reference=str(body["refid"]),
            payment_url=body.get("url"),
            raw=body,
        )

    @retry(
        retry=retry_if_exception_type(GatewayTimeout),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def fetch_status(self, reference: str) -> Optional[PaymentStatus]:
        status, body = await self._request("GET", f"/api/collections/status/{reference}")

        if status == 404:
            raise GatewayReferenceUnknown(f"XentriPay has no collection {reference}")
        if status >= 400 or not isinstance(body, dict):
            raise GatewayError(f"XentriPay status check failed (HTTP {status}): {body}")

        data = body.get("data") if isinstance(body.get("data"), dict) else body
        return self.normalize_status(data.get("status"))
