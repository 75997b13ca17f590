"""
Hosted-payment collaborator (Stripe Checkout over its REST API).

Every provider failure is classified into one of the PaymentError subclasses so
callers can tell a declined card from an outage or a misconfigured key.
"""
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from . import config
from .errors import (
    PaymentAuthenticationFailed,
    PaymentDeclined,
    PaymentError,
    PaymentProviderUnavailable,
    PaymentRateLimited,
    PaymentRequestInvalid,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_amount: int
    quantity: int
    currency: str
    image_url: str | None = None


@dataclass(frozen=True)
class HostedSession:
    id: str
    url: str
    payment_status: str | None = None


def _form_encode(line_items: list[LineItem], **fields: Any) -> dict[str, str]:
    """Flatten a checkout request into Stripe's bracketed form keys."""
    data: dict[str, str] = {"mode": "payment", "payment_method_types[0]": "card"}
    for i, item in enumerate(line_items):
        prefix = f"line_items[{i}]"
        data[f"{prefix}[quantity]"] = str(item.quantity)
        data[f"{prefix}[price_data][currency]"] = item.currency
        data[f"{prefix}[price_data][unit_amount]"] = str(item.unit_amount)
        data[f"{prefix}[price_data][product_data][name]"] = item.name
        if item.image_url:
            data[f"{prefix}[price_data][product_data][images][0]"] = item.image_url

    metadata = fields.pop("metadata", None) or {}
    for key, value in metadata.items():
        data[f"metadata[{key}]"] = str(value)
    for key, value in fields.items():
        if value is not None:
            data[key] = str(value)
    return data


def classify_error(response: httpx.Response) -> PaymentError:
    try:
        body = response.json().get("error", {}) or {}
    except ValueError:
        body = {}

    err_type = body.get("type")
    message = body.get("message") or f"Payment provider returned HTTP {response.status_code}"
    extra = {"provider_code": body.get("code"), "decline_code": body.get("decline_code")}
    extra = {k: v for k, v in extra.items() if v}

    if err_type == "card_error" or response.status_code == 402:
        return PaymentDeclined(message, **extra)
    if response.status_code == 429:
        return PaymentRateLimited("Payment provider is rate limiting requests, retry shortly", **extra)
    if response.status_code in (401, 403):
        return PaymentAuthenticationFailed("Payment provider rejected our credentials")
    if response.status_code >= 500 or err_type == "api_error":
        return PaymentProviderUnavailable("Payment provider is unavailable, retry later")
    return PaymentRequestInvalid(message, **extra)


class PaymentGateway:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            r = await self._client.request(
                method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            raise PaymentProviderUnavailable("Payment provider timeout") from e
        except httpx.RequestError as e:
            raise PaymentProviderUnavailable("Payment provider unreachable") from e

        if r.status_code >= 400:
            raise classify_error(r)

        try:
            return r.json()
        except ValueError as e:
            raise PaymentProviderUnavailable("Bad response from payment provider") from e

    async def create_hosted_session(
        self,
        line_items: list[LineItem],
        success_url: str,
        cancel_url: str,
        client_reference_id: str | None = None,
        metadata: dict | None = None,
    ) -> HostedSession:
        data = _form_encode(
            line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=client_reference_id,
            metadata=metadata,
        )
        body = await self._request("POST", "/v1/checkout/sessions", data=data)
        return HostedSession(id=body["id"], url=body["url"], payment_status=body.get("payment_status"))

    async def retrieve_hosted_session(self, external_id: str) -> HostedSession:
        body = await self._request("GET", f"/v1/checkout/sessions/{external_id}")
        return HostedSession(id=body["id"], url=body.get("url") or "", payment_status=body.get("payment_status"))


def default_gateway(client: httpx.AsyncClient | None = None) -> PaymentGateway:
    return PaymentGateway(
        api_key=config.STRIPE_SECRET_KEY,
        base_url=config.STRIPE_API_BASE,
        client=client,
        timeout=config.PAYMENT_TIMEOUT,
    )
