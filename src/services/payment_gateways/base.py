# coding: utf-8
"""
Payment gateway interface

Each payment rail (mobile money, card) implements PaymentGateway. The
orchestrator picks one from a GatewayRegistry by PaymentType and never
branches on the rail itself.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp

from src.database.models import PaymentStatus, PaymentType


class GatewayError(Exception):
    """Gateway rejected the request or answered with an unusable response"""


class GatewayTimeout(GatewayError):
    """No answer in time; the charge may or may not exist at the gateway"""


class GatewayReferenceUnknown(GatewayError):
    """Gateway confirms it has no transaction for the reference"""


def default_reference(user_id: int, property_id: int, now: datetime) -> str:
    """UNLOCK-<epoch ms>-<user>-<property>"""
    return f"UNLOCK-{int(now.timestamp() * 1000)}-{user_id}-{property_id}"


@dataclass(frozen=True)
class GatewayCharge:
    """Everything a gateway may need to start collecting an unlock fee"""

    reference: str
    unlock_id: str
    user_id: int
    property_id: int
    property_name: str
    amount_local: int
    amount_usd: Decimal
    currency: str
    # Guest contact from the user record
    customer_email: str
    customer_name: str
    customer_phone: Optional[str] = None
    # Mobile money only, supplied by the guest
    payer_phone: Optional[str] = None
    momo_provider: Optional[str] = None
    country_code: Optional[str] = None
    # Card only
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class GatewayDispatch:
    """Gateway answer to a dispatch"""

    status: PaymentStatus
    provider_reference: Optional[str] = None
    payment_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """A payment rail the orchestrator can dispatch unlock charges to"""

    rail: PaymentType
    name: str = "gateway"
    base_url: str = ""
    timeout: int = 30

    def _get_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Any]:
        """
        Send a JSON request to the gateway

        Returns:
            (HTTP status, decoded body); non-JSON bodies come back as {"raw": text}

        Raises:
            GatewayTimeout: request timed out
            GatewayError: connection-level failure
        """
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._get_headers()) as session:
                async with session.request(method, url, json=payload) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {"raw": await response.text()}
                    return response.status, body
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(f"{self.name} {method} {path} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise GatewayError(f"{self.name} {method} {path} failed: {e}") from e

    def make_reference(self, user_id: int, property_id: int, now: datetime) -> str:
        """Transaction reference for a new charge on this rail"""
        return default_reference(user_id, property_id, now)

    @abstractmethod
    def provider_label(self, charge: GatewayCharge) -> str:
        """Provider stored on the unlock record (e.g. MTN_RW)"""

    def validate_charge(self, charge: GatewayCharge) -> None:
        """Reject a charge before anything is persisted"""

    @abstractmethod
    async def dispatch(self, charge: GatewayCharge) -> GatewayDispatch:
        """
        Start collecting the charge

        Raises:
            GatewayTimeout: outcome unknown
            GatewayError: gateway rejected the charge
        """

    @abstractmethod
    async def fetch_status(self, reference: str) -> Optional[PaymentStatus]:
        """
        Ask the gateway for the current status of a reference

        Returns None when the gateway status does not map to a known one.

        Raises:
            GatewayReferenceUnknown: gateway has no such transaction
        """

    @abstractmethod
    def normalize_status(self, raw_status: Optional[str]) -> Optional[PaymentStatus]:
        """Map a gateway status string onto PaymentStatus"""


class GatewayRegistry:
    """PaymentType -> PaymentGateway lookup"""

    def __init__(self, gateways: Mapping[PaymentType, PaymentGateway]):
        self._gateways = dict(gateways)

    @classmethod
    def of(cls, *gateways: PaymentGateway) -> "GatewayRegistry":
        return cls({gateway.rail: gateway for gateway in gateways})

    def get(self, rail: PaymentType) -> PaymentGateway:
        try:
            return self._gateways[PaymentType(rail)]
        except (KeyError, ValueError):
            raise GatewayError(f"No payment gateway configured for {rail}")

    def __contains__(self, rail) -> bool:
        return rail in self._gateways
