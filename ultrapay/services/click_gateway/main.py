"""Click gateway HTTP surface and outbox publisher lifecycle.

Checkout calls `POST /payments` for a redirect URL; Click calls the two webhook
endpoints. Webhook replies always carry the full Click field set, including on
malformed requests, or Click keeps retrying.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ultrapay.common.config import settings
from ultrapay.common.db import SessionLocal
from ultrapay.common.events import KafkaBus
from ultrapay.common.logging import configure_logging, logger, trace_id_ctx
from ultrapay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from ultrapay.common.outbox import run_outbox_publisher
from ultrapay.common.startup import log_startup_config
from ultrapay.common.tracing import instrument_app, setup_tracing
from ultrapay.services.click_gateway.capture import ReconciliationQueue, SqlPaymentStore
from ultrapay.services.click_gateway.ledger import PrepareLedger
from ultrapay.services.click_gateway.models import OutboxEvent
from ultrapay.services.click_gateway.orders import HttpOrderVerifier, SqlOrderVerifier
from ultrapay.services.click_gateway.schemas import (
    ClickAction,
    ClickCallback,
    ClickResult,
    CompleteResult,
    PaymentInitiation,
    PaymentInitiationRequest,
    PaymentStatusView,
    PrepareResult,
)
from ultrapay.services.click_gateway.service import ClickGatewayService
from ultrapay.services.click_gateway.signature import SignatureVerifier

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "redis_url",
        "kafka_bootstrap_servers",
        "click_service_id",
        "click_merchant_id",
        "click_secret_key",
        "click_endpoint",
        "prepare_ttl_seconds",
        "order_verifier",
    ],
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
kafka = KafkaBus()
payments = SqlPaymentStore(SessionLocal, settings.service_name)
if settings.order_verifier == "http":
    orders = HttpOrderVerifier(settings.order_service_url)
else:
    orders = SqlOrderVerifier(SessionLocal)
gateway = ClickGatewayService(
    merchant_id=settings.click_merchant_id,
    service_id=settings.click_service_id,
    endpoint=settings.click_endpoint,
    verifier=SignatureVerifier(settings.click_secret_key),
    ledger=PrepareLedger(
        rdb,
        ttl_seconds=settings.prepare_ttl_seconds,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff_seconds=settings.store_retry_backoff_seconds,
        service_name=settings.service_name,
    ),
    orders=orders,
    executor=payments,
    payments=payments,
    reconciliation=ReconciliationQueue(rdb),
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(
        run_outbox_publisher(SessionLocal, OutboxEvent, kafka, settings.service_name)
    )
    yield
    publisher_task.cancel()
    await kafka.close()


app = FastAPI(title="UltraPay Click Gateway", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency, and bind a trace id for logs."""

    trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
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


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.post("/payments", response_model=PaymentInitiation)
def create_payment(req: PaymentInitiationRequest, x_api_key: str | None = Header(default=None)):
    """Register a pending payment and return the Click redirect URL."""

    enforce_api_key(x_api_key)
    try:
        payments.register(req)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    result = gateway.create_payment(req)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return result


@app.get("/payments/{transaction_id}/status", response_model=PaymentStatusView)
def payment_status(transaction_id: str, x_api_key: str | None = Header(default=None)):
    """Current status of a payment by order id or merchant transaction id."""

    enforce_api_key(x_api_key)
    return gateway.get_payment_status(transaction_id)


async def _read_body(request: Request) -> dict:
    if request.headers.get("content-type", "").startswith("application/json"):
        body = await request.json()
        return body if isinstance(body, dict) else {}
    return dict(await request.form())


def _rejection(body: dict, result: ClickResult, action: ClickAction) -> dict:
    """Reply for callbacks that never reach the gateway service."""

    common = {
        "click_trans_id": str(body.get("click_trans_id") or ""),
        "merchant_trans_id": str(body.get("merchant_trans_id") or ""),
    }
    if action is ClickAction.PREPARE:
        return PrepareResult(**common, result=result).to_wire()
    return CompleteResult(**common, result=result).to_wire()


async def _parse_callback(request: Request, action: ClickAction) -> tuple[ClickCallback | None, dict]:
    try:
        body = await _read_body(request)
    except ValueError as exc:
        logger.warning("unreadable click %s body: %s", action.name.lower(), exc)
        return None, _rejection({}, ClickResult.BAD_REQUEST, action)
    try:
        callback = ClickCallback.model_validate(body)
    except ValidationError as exc:
        logger.warning("malformed click %s callback: %s", action.name.lower(), exc.errors())
        return None, _rejection(body, ClickResult.BAD_REQUEST, action)
    if callback.phase is not action:
        logger.warning("click callback action=%s sent to %s endpoint", callback.action, action.name.lower())
        return None, _rejection(body, ClickResult.ACTION_NOT_FOUND, action)
    return callback, {}


@app.post("/click/prepare")
async def click_prepare(request: Request):
    """Prepare phase webhook."""

    callback, rejection = await _parse_callback(request, ClickAction.PREPARE)
    if callback is None:
        return rejection
    result = await run_in_threadpool(gateway.handle_prepare, callback)
    return result.to_wire()


@app.post("/click/complete")
async def click_complete(request: Request):
    """Complete phase webhook."""

    callback, rejection = await _parse_callback(request, ClickAction.COMPLETE)
    if callback is None:
        return rejection
    result = await run_in_threadpool(gateway.handle_complete, callback)
    return result.to_wire()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
