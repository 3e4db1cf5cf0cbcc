"""Shared fixtures: an in-memory PesaPal fake behind `httpx.MockTransport`."""

import httpx
import pytest

from pesapush.common.config import CommonSettings
from pesapush.services.checkout.client import (
    MOBILE_MONEY_PATH,
    REGISTER_IPN_PATH,
    SUBMIT_ORDER_PATH,
    TOKEN_PATH,
    TRANSACTION_STATUS_PATH,
    PesapalClient,
)
from pesapush.services.checkout.service import PaymentOrchestrator

TRACKING_ID = "b945e4af-80a5-4ec1-8706-e03f8332fb04"


class FakePesapal:
    """Scripted provider: each path answers from a queue whose last entry repeats."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, list] = {
            TOKEN_PATH: [(200, {"token": "tok-123", "expiryDate": "2026-10-19T10:00:00Z", "status": "200"})],
            REGISTER_IPN_PATH: [(200, {"ipn_id": "ipn-1", "url": "https://shop.example/api/ipn", "status": "200"})],
            SUBMIT_ORDER_PATH: [
                (200, {"order_tracking_id": TRACKING_ID, "merchant_reference": "ref", "status": "200"})
            ],
            MOBILE_MONEY_PATH: [(200, {"status": "200", "message": "STK push sent"})],
            TRANSACTION_STATUS_PATH: [(200, {"status": "PENDING"})],
        }

    def script(self, path: str, *responses) -> None:
        """Each response is `(status, json)` or an exception instance to raise."""

        self.routes[path] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for path, queue in self.routes.items():
            if request.url.path.endswith(path):
                entry = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(entry, Exception):
                    raise entry
                status, body = entry
                return httpx.Response(status, json=body)
        return httpx.Response(404, json={"message": "no route"})

    def called(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path.endswith(path))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def config() -> CommonSettings:
    return CommonSettings(
        _env_file=None,
        pesapal_consumer_key="key",
        pesapal_consumer_secret="secret",
        pesapal_ipn_url="https://shop.example/api/ipn",
        order_id_prefix="shop",
        poll_interval_seconds=0,
        max_status_polls=5,
    )


@pytest.fixture
def provider() -> FakePesapal:
    return FakePesapal()


@pytest.fixture
def orchestrator(config, provider) -> PaymentOrchestrator:
    return PaymentOrchestrator(PesapalClient.from_settings(config, transport=provider.transport), config)
