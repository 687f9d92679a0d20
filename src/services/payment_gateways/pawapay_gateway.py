# coding: utf-8
"""
PawaPay mobile money gateway

Collects unlock fees as mobile money deposits. The deposit id is our own
transaction reference, so callbacks and status polls look it up directly.

API: POST /deposits, GET /deposits/{depositId}
"""
import logging  # Needed for tenacity before_sleep_log level constants
import uuid
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.config import PAWAPAY_API_URL, PAWAPAY_API_TOKEN, PAWAPAY_TIMEOUT
from src.core.exceptions import MethodNotSupported, MissingPhoneNumber
from src.database.models import PaymentStatus, PaymentType
from src.services.payment_gateways.base import (
    GatewayCharge,
    GatewayDispatch,
    GatewayError,
    GatewayReferenceUnknown,
    GatewayTimeout,
    PaymentGateway,
)
from src.utils.phone_numbers import calling_code_for, digits_only, to_international_format


class PawaPayGateway(PaymentGateway):
    """
    Mobile money deposits through PawaPay

    Operators are addressed by PawaPay provider codes built from the guest's
    network and country, e.g. MTN + RW -> MTN_MOMO_RWA.
    """

    rail = PaymentType.MOMO
    name = "PawaPay"

    DEFAULT_PROVIDER = "MTN"
    DEFAULT_COUNTRY = "RW"

    COUNTRY_ISO3 = {
        "RW": "RWA",
        "UG": "UGA",
        "KE": "KEN",
        "TZ": "TZA",
        "ZM": "ZMB",
        "BF": "BFA",
        "BJ": "BEN",
        "CI": "CIV",
        "GH": "GHA",
        "SN": "SEN",
        "CM": "CMR",
    }

    OPERATOR_PREFIXES = {
        "MTN": "MTN_MOMO",
        "AIRTEL": "AIRTEL",
        "ORANGE": "ORANGE",
        "VODACOM": "VODACOM",
    }

    STATUS_MAP = {
        "ACCEPTED": PaymentStatus.SUBMITTED,
        "ENQUEUED": PaymentStatus.SUBMITTED,
        "SUBMITTED": PaymentStatus.SUBMITTED,
        "DUPLICATE_IGNORED": PaymentStatus.SUBMITTED,
        "COMPLETED": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "REJECTED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.FAILED,
    }

    DESCRIPTION_PREFIX = "Unlock: "
    DESCRIPTION_MIN_LENGTH = 4
    DESCRIPTION_MAX_LENGTH = 22

    def __init__(
        self,
        api_url: str = PAWAPAY_API_URL,
        api_token: str = PAWAPAY_API_TOKEN,
        timeout: int = PAWAPAY_TIMEOUT,
    ):
        self.base_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout

        if not self.api_token:
            logger.warning("PAWAPAY_API_TOKEN not configured - mobile money deposits will be rejected")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    # ===========================
    # MAPPINGS
    # ===========================

    @classmethod
    def operator_code(cls, provider: Optional[str], country_code: Optional[str]) -> str:
        """
        PawaPay provider code for a network and ISO2 country

        Examples:
            >>> PawaPayGateway.operator_code("MTN", "RW")
            'MTN_MOMO_RWA'
            >>> PawaPayGateway.operator_code("airtel", "UG")
            'AIRTEL_UGA'
        """
        provider = (provider or cls.DEFAULT_PROVIDER).upper()
        iso3 = cls.COUNTRY_ISO3.get((country_code or cls.DEFAULT_COUNTRY).upper(), "RWA")
        prefix = cls.OPERATOR_PREFIXES.get(provider, provider)
        return f"{prefix}_{iso3}"

    @classmethod
    def statement_description(cls, property_name: Optional[str]) -> str:
        """'Unlock: ' + property name, clipped to the 22-character limit"""
        name = (property_name or "").strip()
        if not name:
            return "Property unlock"

        room = cls.DESCRIPTION_MAX_LENGTH - len(cls.DESCRIPTION_PREFIX)
        description = (cls.DESCRIPTION_PREFIX + name[:room]).strip()
        if len(description) < cls.DESCRIPTION_MIN_LENGTH:
            description = "Property unlock"
        return description

    def make_reference(self, user_id: int, property_id: int, now: datetime) -> str:
        # PawaPay requires depositId to be a UUIDv4
        return str(uuid.uuid4())

    def provider_label(self, charge: GatewayCharge) -> str:
        provider = (charge.momo_provider or self.DEFAULT_PROVIDER).upper()
        country = (charge.country_code or self.DEFAULT_COUNTRY).upper()
        return f"{provider}_{country}"

    def normalize_status(self, raw_status: Optional[str]) -> Optional[PaymentStatus]:
        if not raw_status:
            return None
        return self.STATUS_MAP.get(raw_status.upper())

    # ===========================
    # DEPOSITS
    # ===========================

    def validate_charge(self, charge: GatewayCharge) -> None:
        if not digits_only(charge.payer_phone):
            raise MissingPhoneNumber()

        provider = (charge.momo_provider or self.DEFAULT_PROVIDER).upper()
        if provider not in self.OPERATOR_PREFIXES:
            raise MethodNotSupported(f"Unsupported mobile money provider: {charge.momo_provider}")

    async def initiate_deposit(
        self,
        reference: str,
        amount: int,
        currency: str,
        payer_phone: str,
        operator_code: str,
        description: str,
        metadata: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Request a mobile money deposit

        Args:
            reference: depositId (our transaction reference)
            amount: Whole local currency units
            currency: ISO currency code
            payer_phone: International digits, no '+'
            operator_code: PawaPay provider code (MTN_MOMO_RWA, ...)
            description: Statement description (4-22 chars)
            metadata: [{fieldName, fieldValue, isPII}]

        Returns:
            PawaPay response body ({"depositId", "status", ...})

        Raises:
            GatewayTimeout, GatewayError
        """
        payload = {
            "depositId": reference,
            "amount": str(int(amount)),
            "currency": currency,
            "payer": {
                "type": "MMO",
                "accountDetails": {
                    "phoneNumber": payer_phone,
                    "provider": operator_code,
                },
            },
            "customerTimestamp": datetime.now(UTC).isoformat(),
            "statementDescription": description,
            "metadata": metadata,
        }

        status, body = await self._request("POST", "/deposits", payload)

        if status >= 400:
            raise GatewayError(f"PawaPay deposit rejected (HTTP {status}): {body}")

        if not isinstance(body, dict):
            raise GatewayError(f"PawaPay deposit returned unexpected body: {body}")

        if str(body.get("status", "")).upper() == "REJECTED":
            reason = body.get("failureReason") or body.get("rejectionReason") or {}
            raise GatewayError(f"PawaPay deposit rejected: {reason}")

        return body

    async def dispatch(self, charge: GatewayCharge) -> GatewayDispatch:
        operator = self.operator_code(charge.momo_provider, charge.country_code)
        phone = to_international_format(charge.payer_phone, calling_code_for(charge.country_code))

        body = await self.initiate_deposit(
            reference=charge.reference,
            amount=charge.amount_local,
            currency=charge.currency,
            payer_phone=phone,
            operator_code=operator,
            description=self.statement_description(charge.property_name),
            metadata=[
                {"fieldName": "unlockId", "fieldValue": charge.unlock_id, "isPII": False},
                {"fieldName": "propertyId", "fieldValue": str(charge.property_id), "isPII": False},
                {"fieldName": "userId", "fieldValue": str(charge.user_id), "isPII": True},
            ],
        )

        status = self.normalize_status(body.get("status")) or PaymentStatus.SUBMITTED
        logger.info(
            f"PawaPay deposit {charge.reference} accepted: operator={operator}, "
            f"amount={charge.amount_local} {charge.currency}, status={body.get('status')}"
        )

        return GatewayDispatch(
            status=status,
            provider_reference=body.get("depositId") or charge.reference,
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
        status, body = await self._request("GET", f"/deposits/{reference}")

        if status == 404:
            raise GatewayReferenceUnknown(f"PawaPay has no deposit {reference}")
        if status >= 400:
            raise GatewayError(f"PawaPay status check failed (HTTP {status}): {body}")

        # v1 answers with a list, v2 with {"status": "FOUND", "data": {...}}
        if isinstance(body, list):
            if not body:
                raise GatewayReferenceUnknown(f"PawaPay has no deposit {reference}")
            return self.normalize_status(body[0].get("status"))

        if isinstance(body, dict):
            if str(body.get("status", "")).upper() == "NOT_FOUND":
                raise GatewayReferenceUnknown(f"PawaPay has no deposit {reference}")
            data = body.get("data")
            if isinstance(data, dict):
                return self.normalize_status(data.get("status"))
            return self.normalize_status(body.get("status"))

        return None
