"""Async PesaPal v3 client.

Each method is exactly one outbound call. Failures surface as the taxonomy in
`pesapush.common.errors`: unreachable provider -> `TransportError`, failure
status / error body / missing identifier -> the step's `ProviderError`.
No retries happen here.
"""

import time
from typing import Any

import httpx

from pesapush.common.config import CommonSettings
from pesapush.common.errors import (
    IpnRegistrationError,
    OrderSubmissionError,
    ProviderError,
    StatusLookupError,
    StkPushError,
    TokenError,
    TransportError,
)
from pesapush.common.logging import logger
from pesapush.common.metrics import provider_request_duration_seconds, provider_requests_total
from pesapush.services.checkout.schemas import OrderEnvelope

TOKEN_PATH = "/api/Auth/RequestToken"
REGISTER_IPN_PATH = "/api/URLSetup/RegisterIPN"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
MOBILE_MONEY_PATH = "/api/Transactions/InitiateMobileMoneyPayment"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class PesapalClient:
    """Thin typed wrapper over the five PesaPal endpoints used by checkout."""

    def __init__(
        self,
        base_url: str,
        consumer_key: str = "",
        consumer_secret: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "pesapush",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.timeout = timeout
        self.transport = transport
        self.service_name = service_name

    @classmethod
    def from_settings(cls, config: CommonSettings, transport: httpx.AsyncBaseTransport | None = None):
        return cls(
            base_url=config.provider_base_url,
            consumer_key=config.pesapal_consumer_key,
            consumer_secret=config.pesapal_consumer_secret,
            timeout=config.http_timeout_seconds,
            transport=transport,
            service_name=config.service_name,
        )

    async def _call(
        self,
        method: str,
        path: str,
        error_cls: type[ProviderError],
        token: str | None = None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send one request and return its JSON object body.

        Raises `TransportError` when the provider is unreachable and `error_cls`
        for non-2xx statuses, non-object bodies, or a non-null `error` member.
        """

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        endpoint = error_cls.step
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(method, path, headers=headers, json=json, params=params)
        except httpx.HTTPError as exc:
            provider_requests_total.labels(
                service=self.service_name, endpoint=endpoint, outcome="transport_error"
            ).inc()
            logger.error("pesapal unreachable endpoint=%s error=%s", endpoint, exc)
            raise TransportError(f"Could not reach PesaPal ({endpoint}): {exc}") from exc
        finally:
            provider_request_duration_seconds.labels(service=self.service_name, endpoint=endpoint).observe(
                max(0.0, time.perf_counter() - start)
            )

        body = _body(response)
        logger.info("pesapal response endpoint=%s status=%s", endpoint, response.status_code)
        if response.status_code >= 400:
            provider_requests_total.labels(service=self.service_name, endpoint=endpoint, outcome="http_error").inc()
            raise error_cls(
                f"PesaPal {endpoint} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                details=body,
            )
        if not isinstance(body, dict):
            provider_requests_total.labels(service=self.service_name, endpoint=endpoint, outcome="bad_body").inc()
            raise error_cls(
                f"Invalid response from PesaPal ({endpoint}): {body!r}",
                status_code=response.status_code,
                details=body,
            )
        reason = _error_reason(body.get("error"))
        if reason:
            provider_requests_total.labels(
                service=self.service_name, endpoint=endpoint, outcome="provider_error"
            ).inc()
            raise error_cls(
                f"PesaPal {endpoint} rejected the request: {reason}",
                status_code=_status_from_body(body),
                details=body,
            )
        provider_requests_total.labels(service=self.service_name, endpoint=endpoint, outcome="ok").inc()
        return body

    async def request_token(self) -> dict[str, Any]:
        """Exchange consumer credentials for a bearer token payload."""

        if not self.consumer_key or not self.consumer_secret:
            raise TokenError("PesaPal consumer credentials are not configured", status_code=500)
        body = await self._call(
            "POST",
            TOKEN_PATH,
            TokenError,
            json={"consumer_key": self.consumer_key, "consumer_secret": self.consumer_secret},
        )
        if not body.get("token"):
            raise TokenError(f"No token in response: {body}", status_code=502, details=body)
        return body

    async def register_ipn(self, token: str, url: str) -> str:
        """Register `url` as a POST IPN endpoint and return its `ipn_id`."""

        body = await self._call(
            "POST",
            REGISTER_IPN_PATH,
            IpnRegistrationError,
            token=token,
            json={"url": url, "ipn_notification_type": "POST"},
        )
        ipn_id = body.get("ipn_id")
        if not ipn_id:
            raise IpnRegistrationError(
                f"Failed to get IPN ID from response: {body}", status_code=502, details=body
            )
        return ipn_id

    async def submit_order(self, token: str, envelope: OrderEnvelope) -> dict[str, Any]:
        """Submit the order envelope; the body must carry `order_tracking_id`."""

        body = await self._call("POST", SUBMIT_ORDER_PATH, OrderSubmissionError, token=token, json=envelope.payload())
        if not body.get("order_tracking_id"):
            raise OrderSubmissionError(f"Invalid response from PesaPal: {body}", status_code=502, details=body)
        return body

    async def initiate_mobile_money(self, token: str, order_tracking_id: str, phone_number: str) -> dict[str, Any]:
        """Ask PesaPal to send an STK push for the order to `phone_number`."""

        return await self._call(
            "POST",
            MOBILE_MONEY_PATH,
            StkPushError,
            token=token,
            json={"orderTrackingId": order_tracking_id, "phoneNumber": phone_number},
        )

    async def transaction_status(self, token: str, order_tracking_id: str) -> dict[str, Any]:
        return await self._call(
            "GET",
            TRANSACTION_STATUS_PATH,
            StatusLookupError,
            token=token,
            params={"orderTrackingId": order_tracking_id},
        )


def _error_reason(error: Any) -> str | None:
    """Return a reason when `error` describes a failure.

    Successful status lookups carry an `error` object whose members are all null.
    """

    if not error:
        return None
    if isinstance(error, dict):
        if not any(value is not None for value in error.values()):
            return None
        return error.get("message") or error.get("code") or error.get("error_type") or "unknown error"
    return str(error)


def _status_from_body(body: dict[str, Any]) -> int:
    # PesaPal mirrors an HTTP code as a string in `status`
    try:
        code = int(body.get("status"))
    except (TypeError, ValueError):
        return 502
    return code if code >= 400 else 502
