"""Mercado Pago API client for notification reconciliation.

Webhook payloads only say *which* resource changed; the current state is
always re-fetched here.

Mercado Pago API Reference:
- Payments: GET /v1/payments/{id}
- Subscriptions (preapproval): GET /preapproval/{id}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from recon_api.billing.exceptions import GatewayFetchError
from recon_api.config.env import (
    get_gateway_base_url,
    get_gateway_timeout,
    get_payment_access_token,
    get_subscription_access_token,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalGatewayRecord:
    """Gateway's current, trusted view of a payment or preapproval."""

    gateway_id: str
    gateway_status: Optional[str]
    external_reference: Optional[str]
    amount: Optional[float] = None
    approved_at: Optional[str] = None
    subscription_id: Optional[str] = None
    status_detail: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def snapshot(self) -> dict[str, Any]:
        """Audit snapshot persisted alongside a status change."""
        return {
            "gateway_id": self.gateway_id,
            "status": self.gateway_status,
            "status_detail": self.status_detail,
            "payment_method": self.payment_method_id,
            "payment_type": self.payment_type_id,
            "transaction_amount": self.amount,
            "date_approved": self.approved_at,
        }


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _float_or_none(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def payment_record_from_json(data: dict) -> CanonicalGatewayRecord:
    """Build a record from a /v1/payments resource."""
    return CanonicalGatewayRecord(
        gateway_id=str(data.get("id")),
        gateway_status=_str_or_none(data.get("status")),
        external_reference=_str_or_none(data.get("external_reference")),
        amount=_float_or_none(data.get("transaction_amount")),
        approved_at=_str_or_none(data.get("date_approved")),
        subscription_id=None,
        status_detail=_str_or_none(data.get("status_detail")),
        payment_method_id=_str_or_none(data.get("payment_method_id")),
        payment_type_id=_str_or_none(data.get("payment_type_id")),
        raw=data,
    )


def preapproval_record_from_json(data: dict) -> CanonicalGatewayRecord:
    """Build a record from a /preapproval resource.

    The preapproval id itself is the subscription identifier the resolver
    matches against.
    """
    auto_recurring = data.get("auto_recurring") or {}
    return CanonicalGatewayRecord(
        gateway_id=str(data.get("id")),
        gateway_status=_str_or_none(data.get("status")),
        external_reference=_str_or_none(data.get("external_reference")),
        amount=_float_or_none(auto_recurring.get("transaction_amount")),
        approved_at=_str_or_none(data.get("date_created")),
        subscription_id=_str_or_none(data.get("id")),
        status_detail=_str_or_none(data.get("reason")),
        payment_method_id=_str_or_none(data.get("payment_method_id")),
        raw=data,
    )


class MercadoPagoClient:
    """Read-only Mercado Pago client.

    Payments and preapprovals are fetched with separately scoped bearer
    credentials; the two are never interchanged.

    Environment Variables:
    - MERCADOPAGO_ACCESS_TOKEN_TRANSPARENT: payment lookups
    - MERCADOPAGO_ACCESS_TOKEN_SUBS: preapproval lookups
    - MERCADOPAGO_ACCESS_TOKEN: shared fallback for both
    - MERCADOPAGO_API_BASE_URL, MERCADOPAGO_TIMEOUT_SECONDS
    """

    def __init__(
        self,
        *,
        payment_token: str,
        subscription_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.payment_token = payment_token
        self.subscription_token = subscription_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_env(cls) -> "MercadoPagoClient":
        """Build a client from environment configuration.

        Raises:
            ValueError: If no access token is configured
        """
        return cls(
            payment_token=get_payment_access_token(),
            subscription_token=get_subscription_access_token(),
            base_url=get_gateway_base_url(),
            timeout=get_gateway_timeout(),
        )

    async def _get_json(self, path: str, token: str, *, resource: str, gateway_id: str) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise GatewayFetchError(
                f"Mercado Pago {resource} lookup timed out after {self.timeout}s",
                resource=resource,
                gateway_id=gateway_id,
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise GatewayFetchError(
                f"Mercado Pago {resource} lookup returned HTTP {exc.response.status_code}",
                resource=resource,
                gateway_id=gateway_id,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise GatewayFetchError(
                f"Mercado Pago {resource} lookup failed: {type(exc).__name__}",
                resource=resource,
                gateway_id=gateway_id,
            ) from exc
        except ValueError as exc:
            raise GatewayFetchError(
                f"Mercado Pago {resource} response is not valid JSON",
                resource=resource,
                gateway_id=gateway_id,
            ) from exc

        if not isinstance(data, dict) or data.get("id") is None:
            raise GatewayFetchError(
                f"Mercado Pago {resource} response has no id",
                resource=resource,
                gateway_id=gateway_id,
            )
        return data

    async def fetch_payment(self, payment_id: str) -> CanonicalGatewayRecord:
        """Get payment details from Mercado Pago.

        Raises:
            GatewayFetchError: On network error, timeout, non-2xx or bad body
        """
        data = await self._get_json(
            f"/v1/payments/{payment_id}",
            self.payment_token,
            resource="payment",
            gateway_id=payment_id,
        )
        record = payment_record_from_json(data)
        logger.info(
            "Mercado Pago payment retrieved",
            extra={
                "event": "mp.payment.retrieved",
                "payment_id": payment_id,
                "status": record.gateway_status,
            },
        )
        return record

    async def fetch_subscription(self, preapproval_id: str) -> CanonicalGatewayRecord:
        """Get preapproval (subscription) details from Mercado Pago.

        Raises:
            GatewayFetchError: On network error, timeout, non-2xx or bad body
        """
        data = await self._get_json(
            f"/preapproval/{preapproval_id}",
            self.subscription_token,
            resource="preapproval",
            gateway_id=preapproval_id,
        )
        record = preapproval_record_from_json(data)
        logger.info(
            "Mercado Pago preapproval retrieved",
            extra={
                "event": "mp.preapproval.retrieved",
                "preapproval_id": preapproval_id,
                "status": record.gateway_status,
            },
        )
        return record


# Global client instance (singleton)
_mp_client: Optional[MercadoPagoClient] = None


def get_mercadopago_client() -> MercadoPagoClient:
    """Get global Mercado Pago client instance (singleton).

    Raises:
        ValueError: If no access token is configured
    """
    global _mp_client
    if _mp_client is None:
        _mp_client = MercadoPagoClient.from_env()
    return _mp_client
