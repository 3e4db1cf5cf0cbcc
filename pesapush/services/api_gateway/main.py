"""Browser-facing entrypoint for checkout.

Serves the `get-token` / `submit-order` / `check-payment` endpoints used by the
payment form, a server-side initiate endpoint, the PesaPal IPN callback, and
health/metrics endpoints. Every `/api/*` route answers CORS preflight itself and
reports errors as `{message, details?}`.
"""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from pesapush.common.config import settings
from pesapush.common.errors import PaymentError, ProviderError, TransportError
from pesapush.common.logging import configure_logging, log_context, logger
from pesapush.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from pesapush.common.startup import log_startup_config
from pesapush.common.tracing import instrument_app, setup_tracing
from pesapush.services.checkout.client import PesapalClient
from pesapush.services.checkout.schemas import PaymentOutcome, PaymentRequest, SubmitOrderBody
from pesapush.services.checkout.service import PaymentOrchestrator

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "pesapal_environment",
        "pesapal_consumer_key",
        "pesapal_consumer_secret",
        "pesapal_ipn_url",
        "poll_interval_seconds",
        "max_status_polls",
    ],
)
orchestrator = PaymentOrchestrator(PesapalClient.from_settings(settings), settings)

# path -> verbs advertised in CORS preflight
CORS_ROUTES: dict[str, str] = {
    "/api/get-token": "GET",
    "/api/submit-order": "POST",
    "/api/check-payment": "GET",
    "/api/initiate-payment": "POST",
    "/api/ipn": "GET, POST",
}


def get_orchestrator() -> PaymentOrchestrator:
    return orchestrator


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Stop background status watches on shutdown."""

    yield
    await orchestrator.aclose()


app = FastAPI(title="PesaPush Gateway", lifespan=lifespan)
instrument_app(app)


def cors_headers(methods: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": settings.cors_allow_origin,
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Methods": f"{methods}, OPTIONS",
    }


def error_response(message: str, status_code: int, details=None) -> JSONResponse:
    content = {"message": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(content=jsonable_encoder(content), status_code=status_code)


def provider_error_response(exc: PaymentError) -> JSONResponse:
    return error_response(
        exc.message,
        status_code=getattr(exc, "status_code", None) or 500,
        details=getattr(exc, "details", None) or {},
    )


def outcome_response(outcome: PaymentOutcome) -> JSONResponse:
    status_code = outcome.status_code if outcome.is_error else 200
    return JSONResponse(content=jsonable_encoder(outcome.to_response()), status_code=status_code)


@app.middleware("http")
async def cors_and_metrics_middleware(request: Request, call_next):
    """Answer preflight, attach CORS headers, and record request metrics."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    allowed = CORS_ROUTES.get(request.url.path)
    status_code = 500
    try:
        if allowed is not None and method == "OPTIONS":
            response = Response(status_code=200, headers=cors_headers(allowed))
        else:
            response = await call_next(request)
            if allowed is not None:
                response.headers.update(cors_headers(allowed))
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
        status_code = response.status_code
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_: Request, exc: StarletteHTTPException):
    message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
    response = error_response(message, exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError):
    return error_response("Invalid request", 400, details=exc.errors())


@app.get("/api/get-token")
async def get_token(service: PaymentOrchestrator = Depends(get_orchestrator)):
    """Exchange server credentials for a PesaPal bearer token."""

    try:
        payload = await service.client.request_token()
    except (TransportError, ProviderError) as exc:
        logger.error("get-token failed: %s", exc.message)
        return provider_error_response(exc)
    return {"token": payload["token"], "expiryDate": payload.get("expiryDate")}


@app.post("/api/submit-order")
async def submit_order(
    body: SubmitOrderBody | None = None,
    service: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Register IPN, submit the order, and push to the phone (or return a redirect)."""

    body = body or SubmitOrderBody()
    if not body.token:
        return error_response("Token is required", 400)
    if body.orderData is None:
        return error_response("Order data is required", 400)
    logger.info(
        "submit-order received order_id=%s method=%s",
        body.orderData.id,
        body.orderData.payment_method or "<hosted>",
    )
    return outcome_response(await service.submit(body.token, body.orderData))


@app.get("/api/check-payment")
async def check_payment(
    orderId: str | None = None,
    authorization: str | None = Header(default=None),
    service: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Pass the provider's transaction status through to the browser."""

    if not orderId:
        return error_response("Order ID is required", 400)
    token = authorization.removeprefix("Bearer ").strip() if authorization else ""
    if not token:
        return error_response("Authorization token is required", 400)

    with log_context(order_tracking_id=orderId):
        try:
            status, payload = await service.fetch_status(orderId, token)
        except (TransportError, ProviderError) as exc:
            logger.error("check-payment failed: %s", exc.message)
            return provider_error_response(exc)
        logger.info("check-payment status=%s", status.value)
    return payload


def log_status_update(outcome: PaymentOutcome) -> None:
    logger.info(
        "payment status order_tracking_id=%s kind=%s message=%s",
        outcome.order_tracking_id,
        outcome.kind.value,
        outcome.message,
    )


@app.post("/api/initiate-payment")
async def initiate_payment(
    req: PaymentRequest,
    x_correlation_id: str | None = Header(default=None),
    service: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Run a full attempt with server credentials; pushed payments are watched in the background."""

    with log_context(trace_id=x_correlation_id or str(uuid4())):
        outcome = await service.initiate(req, on_update=log_status_update)
    return outcome_response(outcome)


@app.api_route("/api/ipn", methods=["GET", "POST"])
async def ipn_callback(request: Request, service: PaymentOrchestrator = Depends(get_orchestrator)):
    """Acknowledge a PesaPal IPN after confirming the status with the provider."""

    params = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            params.update(body)

    order_tracking_id = params.get("OrderTrackingId")
    merchant_reference = params.get("OrderMerchantReference")
    notification_type = params.get("OrderNotificationType") or "IPNCHANGE"
    if not order_tracking_id or not merchant_reference:
        return error_response("Missing OrderTrackingId or OrderMerchantReference", 400)

    ack = {
        "orderNotificationType": notification_type,
        "orderTrackingId": order_tracking_id,
        "orderMerchantReference": merchant_reference,
        "status": 200,
    }
    with log_context(order_id=merchant_reference, order_tracking_id=order_tracking_id):
        try:
            status, payload = await service.fetch_status(order_tracking_id)
            logger.info(
                "ipn received type=%s status=%s description=%s",
                notification_type,
                status.value,
                payload.get("payment_status_description"),
            )
        except (TransportError, ProviderError) as exc:
            # non-200 ack makes PesaPal resend the notification
            logger.error("ipn status lookup failed: %s", exc.message)
            ack["status"] = 500
    return ack


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
