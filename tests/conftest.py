"""Shared fixtures: SQLite-backed payment store, fakeredis ledger, signed callbacks."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("CLICK_MERCHANT_ID", "7001")
os.environ.setdefault("CLICK_SERVICE_ID", "30001")
os.environ.setdefault("CLICK_SECRET_KEY", "test-click-secret")
os.environ.setdefault("CLICK_USER_ID", "4001")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4318/v1/traces")

import threading
from decimal import Decimal

import fakeredis
import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ultrapay.common.db import Base
from ultrapay.services.click_gateway import models  # noqa: F401  (registers tables)
from ultrapay.services.click_gateway.capture import PaymentCaptureExecutor, ReconciliationQueue, SqlPaymentStore
from ultrapay.services.click_gateway.ledger import PrepareLedger
from ultrapay.services.click_gateway.orders import OrderVerifier, SqlOrderVerifier
from ultrapay.services.click_gateway.schemas import ClickAction, ClickCallback
from ultrapay.services.click_gateway.service import ClickGatewayService
from ultrapay.services.click_gateway.signature import SignatureVerifier, sign_callback


SECRET_KEY = "test-click-secret"
SERVICE_ID = "30001"
MERCHANT_ID = "7001"


class FlakyRedis(fakeredis.FakeRedis):
    """FakeRedis whose `set` drops the connection a configurable number of times."""

    failures = 0

    def set(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            raise redis.ConnectionError("connection reset by peer")
        return super().set(*args, **kwargs)


class ReplyLostPipeline:
    """Pipeline whose EXEC is applied by the server but whose reply never arrives."""

    def __init__(self, pipe, owner) -> None:
        self.pipe = pipe
        self.owner = owner

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.pipe.reset()

    def __getattr__(self, name):
        return getattr(self.pipe, name)

    def execute(self):
        result = self.pipe.execute()
        if self.owner.drops > 0:
            self.owner.drops -= 1
            raise redis.ConnectionError("connection closed before EXEC reply")
        return result


class ReplyLostRedis(fakeredis.FakeRedis):
    """FakeRedis that drops a configurable number of EXEC replies."""

    drops = 0

    def pipeline(self, *args, **kwargs):
        return ReplyLostPipeline(super().pipeline(*args, **kwargs), self)


class StaticOrders(OrderVerifier):
    """Order verifier over a fixed {merchant_trans_id: (order_id, amount)} map."""

    def __init__(self, orders: dict[str, tuple[str, str]]) -> None:
        self.orders = orders

    def verify(self, merchant_trans_id: str, amount: Decimal) -> bool:
        order = self.orders.get(merchant_trans_id)
        return order is not None and Decimal(order[1]) == amount

    def order_id_for(self, merchant_trans_id: str) -> str | None:
        order = self.orders.get(merchant_trans_id)
        return order[0] if order else None


class RecordingExecutor(PaymentCaptureExecutor):
    """Capture executor that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.captures: list[tuple] = []
        self.failures: list[tuple] = []
        self.capture_error: Exception | None = None
        self._lock = threading.Lock()

    def capture(self, order_id, amount, click_trans_id, merchant_trans_id=None) -> None:
        if self.capture_error is not None:
            raise self.capture_error
        with self._lock:
            self.captures.append((order_id, amount, click_trans_id))

    def fail(self, order_id, reason, click_trans_id, merchant_trans_id=None) -> None:
        with self._lock:
            self.failures.append((order_id, reason, click_trans_id))


def make_callback(
    action: ClickAction,
    merchant_trans_id: str = "m1",
    amount: str = "50000",
    merchant_prepare_id: str = "",
    click_trans_id: str = "900001",
    error: int = 0,
    secret_key: str = SECRET_KEY,
    **overrides,
) -> ClickCallback:
    """Build a callback signed the way Click signs it."""

    fields = {
        "click_trans_id": click_trans_id,
        "service_id": SERVICE_ID,
        "click_paydoc_id": "1800001",
        "merchant_trans_id": merchant_trans_id,
        "merchant_prepare_id": merchant_prepare_id,
        "amount": amount,
        "action": int(action),
        "error": error,
        "error_note": "Success" if error == 0 else "Payment cancelled",
        "sign_time": "2026-10-19 12:00:00",
    }
    fields["sign_string"] = sign_callback(ClickCallback(**fields), secret_key)
    fields.update(overrides)
    return ClickCallback(**fields)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def rdb(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def ledger(rdb):
    return PrepareLedger(rdb, ttl_seconds=600, retry_attempts=3, retry_backoff_seconds=0)


@pytest.fixture
def store(session_factory):
    return SqlPaymentStore(session_factory)


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def reconciliation(rdb):
    return ReconciliationQueue(rdb)


@pytest.fixture
def gateway(ledger, executor, reconciliation):
    """Gateway over in-memory collaborators; order m1 is o1 for 50000."""

    return ClickGatewayService(
        merchant_id=MERCHANT_ID,
        service_id=SERVICE_ID,
        endpoint="https://my.click.uz",
        verifier=SignatureVerifier(SECRET_KEY),
        ledger=ledger,
        orders=StaticOrders({"m1": ("o1", "50000"), "m2": ("o2", "125000.50")}),
        executor=executor,
        reconciliation=reconciliation,
    )


@pytest.fixture
def sql_gateway(ledger, store, session_factory, reconciliation):
    """Gateway wired to the SQL payment store, as in production."""

    return ClickGatewayService(
        merchant_id=MERCHANT_ID,
        service_id=SERVICE_ID,
        endpoint="https://my.click.uz",
        verifier=SignatureVerifier(SECRET_KEY),
        ledger=ledger,
        orders=SqlOrderVerifier(session_factory),
        executor=store,
        payments=store,
        reconciliation=reconciliation,
    )
