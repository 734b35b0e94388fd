import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx

from parking_settlement.errors import ProviderError
from parking_settlement.models import PaymentMethod

logger = logging.getLogger(__name__)


class ProviderStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


_STATUS_MAP = {
    "approved": ProviderStatus.APPROVED,
    "authorized": ProviderStatus.APPROVED,
    "rejected": ProviderStatus.REJECTED,
    "cancelled": ProviderStatus.REJECTED,
    "expired": ProviderStatus.EXPIRED,
}


def map_provider_status(raw: Optional[str]) -> ProviderStatus:
    return _STATUS_MAP.get((raw or "").lower(), ProviderStatus.PENDING)


@dataclass
class ProviderReference:
    reference: str
    checkout_url: Optional[str] = None
    qr_data: Optional[str] = None


class PaymentProviderClient:
    """Hosted checkout provider: creates qr/link references and reports their outcome."""

    def __init__(self, base_url: str, token: str, timeout: float = 10.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self):
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def create_qr_or_link(self, amount: Decimal, plate_number: str, method: PaymentMethod) -> ProviderReference:
        payload = {
            "items": [{
                "title": f"Parking - {plate_number}",
                "quantity": 1,
                "unit_price": float(amount),
            }],
            "external_reference": plate_number,
            "point_of_interaction": method.value,
        }

        try:
            async with self._client() as client:
                response = await client.post("/checkout/preferences", json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.warning(f"Failed to create {method.value} reference for {plate_number}: {e}")
            raise ProviderError(f"Could not create {method.value} payment for {plate_number}") from e

        reference = data.get("id")
        if not reference:
            raise ProviderError("Provider response carried no preference id")

        logger.info(f"Created {method.value} reference {reference} for {plate_number}: {amount}")
        return ProviderReference(
            reference=reference,
            checkout_url=data.get("init_point"),
            qr_data=data.get("qr_data"),
        )

    async def poll_status(self, external_reference: str) -> ProviderStatus:
        try:
            async with self._client() as client:
                response = await client.get(
                    "/v1/payments/search",
                    params={"preference_id": external_reference, "limit": 10},
                )
                response.raise_for_status()
                payments = response.json().get("results", [])
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.warning(f"Failed to poll reference {external_reference}: {e}")
            raise ProviderError(f"Could not poll payment {external_reference}") from e

        statuses = [map_provider_status(p.get("status")) for p in payments]
        for wanted in (ProviderStatus.APPROVED, ProviderStatus.REJECTED, ProviderStatus.EXPIRED):
            if wanted in statuses:
                return wanted
        return ProviderStatus.PENDING

    async def cancel(self, external_reference: str):
        expired_at = datetime.now(timezone.utc).isoformat()
        try:
            async with self._client() as client:
                response = await client.put(
                    f"/checkout/preferences/{external_reference}",
                    json={"expires": True, "expiration_date_to": expired_at},
                )
                response.raise_for_status()
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            raise ProviderError(f"Could not cancel payment {external_reference}") from e

        logger.info(f"Cancelled reference {external_reference}")
