"""SQL payment store, order verifiers and reconciliation replay."""

from decimal import Decimal

import httpx
import pytest
from pydantic import ValidationError
from sqlalchemy import select

from scripts.replay_reconciliation import replay
from ultrapay.common.config import CommonSettings
from ultrapay.common.startup import redacted_config
from ultrapay.services.click_gateway.capture import CaptureError
from ultrapay.services.click_gateway.models import OutboxEvent, Payment, PaymentTimeline
from ultrapay.services.click_gateway.orders import HttpOrderVerifier, OrderServiceError, SqlOrderVerifier
from ultrapay.services.click_gateway.schemas import PaymentInitiationRequest


def _checkout(**overrides) -> PaymentInitiationRequest:
    values = {
        "amount": Decimal("50000"),
        "order_id": "o1",
        "user_id": "u1",
        "return_url": "https://shop.example/return",
        "cancel_url": "https://shop.example/cancel",
        "merchant_trans_id": "m1",
    }
    values.update(overrides)
    return PaymentInitiationRequest(**values)


def _payment(session_factory, merchant_trans_id="m1") -> Payment:
    with session_factory() as db:
        return db.execute(select(Payment).where(Payment.merchant_trans_id == merchant_trans_id)).scalar_one()


def _timeline(session_factory) -> list[tuple]:
    with session_factory() as db:
        rows = db.execute(select(PaymentTimeline)).scalars().all()
        return sorted((row.from_state or "", row.to_state, row.reason) for row in rows)


class TestRegister:
    def test_creates_pending_payment(self, store, session_factory):
        store.register(_checkout())

        payment = _payment(session_factory)
        assert payment.status == "pending"
        assert payment.order_id == "o1"
        assert Decimal(payment.amount) == Decimal("50000")
        assert _timeline(session_factory) == [("", "pending", "checkout_started")]

    def test_is_idempotent_per_merchant_transaction(self, store, session_factory):
        store.register(_checkout())
        store.register(_checkout())

        with session_factory() as db:
            assert len(db.execute(select(Payment)).scalars().all()) == 1

    @pytest.mark.parametrize("overrides", [{"order_id": "o2"}, {"amount": Decimal("1")}])
    def test_reused_merchant_transaction_conflicts(self, store, overrides):
        store.register(_checkout())

        with pytest.raises(ValueError):
            store.register(_checkout(**overrides))


class TestCapture:
    def test_completes_payment_and_queues_event(self, store, session_factory):
        store.register(_checkout())

        store.capture("o1", Decimal("50000"), "900001", "m1")

        payment = _payment(session_factory)
        assert payment.status == "completed"
        assert payment.click_trans_id == "900001"
        assert Decimal(payment.captured_amount) == Decimal("50000")
        assert payment.state_version == 1
        assert ("pending", "completed", "click_complete") in _timeline(session_factory)
        with session_factory() as db:
            event = db.execute(select(OutboxEvent)).scalar_one()
        assert event.topic == "payments.captured"
        assert event.status == "PENDING"
        assert event.payload["payload"]["order_id"] == "o1"
        assert event.payload["payload"]["amount"] == "50000"

    def test_same_click_transaction_is_noop(self, store, session_factory):
        store.register(_checkout())
        store.capture("o1", Decimal("50000"), "900001", "m1")

        store.capture("o1", Decimal("50000"), "900001", "m1")

        assert _payment(session_factory).state_version == 1
        with session_factory() as db:
            assert len(db.execute(select(OutboxEvent)).scalars().all()) == 1

    def test_second_click_transaction_is_rejected(self, store):
        store.register(_checkout())
        store.capture("o1", Decimal("50000"), "900001", "m1")

        with pytest.raises(CaptureError):
            store.capture("o1", Decimal("50000"), "900002", "m1")

    def test_amount_must_match_pending_payment(self, store, session_factory):
        store.register(_checkout())

        with pytest.raises(CaptureError):
            store.capture("o1", Decimal("49999"), "900001", "m1")
        assert _payment(session_factory).status == "pending"

    def test_unknown_order(self, store):
        with pytest.raises(CaptureError):
            store.capture("nope", Decimal("50000"), "900001")


class TestFail:
    def test_pending_payment_becomes_failed(self, store, session_factory):
        store.register(_checkout())

        store.fail("o1", "-5017:Payment cancelled", "900001", "m1")

        payment = _payment(session_factory)
        assert payment.status == "failed"
        assert payment.failure_reason == "-5017:Payment cancelled"

    def test_nothing_pending_is_a_noop(self, store, session_factory):
        store.register(_checkout())
        store.capture("o1", Decimal("50000"), "900001", "m1")

        store.fail("o1", "-1:late", "900002", "m1")

        assert _payment(session_factory).status == "completed"


class TestFind:
    def test_by_order_or_merchant_transaction(self, store):
        store.register(_checkout())

        assert store.find("o1").merchant_trans_id == "m1"
        assert store.find("m1").order_id == "o1"
        assert store.find("missing") is None

    def test_completed_attempt_wins(self, store):
        store.register(_checkout())
        store.register(_checkout(merchant_trans_id="m1-retry"))
        store.capture("o1", Decimal("50000"), "900001", "m1-retry")

        assert store.find("o1").merchant_trans_id == "m1-retry"


class TestSqlOrderVerifier:
    def test_pending_payment_with_exact_amount(self, store, session_factory):
        store.register(_checkout())
        orders = SqlOrderVerifier(session_factory)

        assert orders.verify("m1", Decimal("50000.00"))
        assert not orders.verify("m1", Decimal("50000.01"))
        assert not orders.verify("m9", Decimal("50000"))
        assert orders.order_id_for("m1") == "o1"
        assert orders.order_id_for("m9") is None

    def test_paid_order_is_not_payable(self, store, session_factory):
        store.register(_checkout())
        store.capture("o1", Decimal("50000"), "900001", "m1")

        assert not SqlOrderVerifier(session_factory).verify("m1", Decimal("50000"))


def _http_orders(handler) -> HttpOrderVerifier:
    return HttpOrderVerifier("http://orders.test/", transport=httpx.MockTransport(handler))


class TestHttpOrderVerifier:
    def test_found_order(self):
        def handler(request):
            assert request.url.path == "/orders/by-transaction/m1"
            return httpx.Response(200, json={"order_id": "o1", "amount": "50000", "payment_status": "pending"})

        orders = _http_orders(handler)

        assert orders.verify("m1", Decimal("50000"))
        assert orders.order_id_for("m1") == "o1"

    def test_paid_order_is_not_payable(self):
        orders = _http_orders(
            lambda request: httpx.Response(200, json={"order_id": "o1", "amount": 50000, "payment_status": "completed"})
        )

        assert not orders.verify("m1", Decimal("50000"))

    def test_missing_order(self):
        orders = _http_orders(lambda request: httpx.Response(404))

        assert not orders.verify("m1", Decimal("50000"))
        assert orders.order_id_for("m1") is None

    def test_server_error_raises(self):
        orders = _http_orders(lambda request: httpx.Response(503))

        with pytest.raises(OrderServiceError):
            orders.verify("m1", Decimal("50000"))

    def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(OrderServiceError):
            _http_orders(handler).order_id_for("m1")


    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>bad gateway</html>"),
            httpx.Response(200, json=[{"order_id": "o1", "amount": "50000"}]),
            httpx.Response(200, json={"order_id": 1, "amount": "50000"}),
        ],
    )
    def test_malformed_response_raises(self, response):
        orders = _http_orders(lambda request: response)

        with pytest.raises(OrderServiceError):
            orders.verify("m1", Decimal("50000"))

    def test_non_numeric_amount_raises(self):
        orders = _http_orders(lambda request: httpx.Response(200, json={"order_id": "o1", "amount": "fifty"}))

        with pytest.raises(OrderServiceError):
            orders.verify("m1", Decimal("50000"))


class TestReconciliationReplay:
    def _item(self, **overrides) -> dict:
        item = {"order_id": "o1", "merchant_trans_id": "m1", "click_trans_id": "900001", "amount": "50000"}
        item.update(overrides)
        return item

    def test_replays_lost_capture(self, store, reconciliation, session_factory):
        store.register(_checkout())
        reconciliation.push(self._item())

        assert replay(reconciliation, store, limit=10) == (1, 0)
        assert _payment(session_factory).status == "completed"
        assert reconciliation.size() == 0

    def test_failed_items_are_requeued(self, store, reconciliation):
        reconciliation.push(self._item(order_id="ghost", merchant_trans_id="m9"))

        assert replay(reconciliation, store, limit=10) == (0, 1)
        assert reconciliation.size() == 1
        assert "no pending payment" in reconciliation.pop()["error"]


def test_startup_config_redacts_secrets():
    config = CommonSettings(
        postgres_dsn="postgresql+psycopg://app:pw@db/app",
        api_key="k",
        click_merchant_id="7001",
        click_service_id="30001",
        click_secret_key="s3cret",
        click_user_id="4001",
    )

    values = redacted_config(config, ["click_service_id", "click_secret_key", "postgres_dsn", "not_a_field"])

    assert values == {
        "click_service_id": "30001",
        "click_secret_key": "<redacted>",
        "postgres_dsn": "<redacted>",
        "not_a_field": "<unset>",
    }


def _settings(**overrides) -> CommonSettings:
    values = {
        "postgres_dsn": "sqlite+pysqlite:///:memory:",
        "api_key": "k",
        "click_merchant_id": "7001",
        "click_service_id": "30001",
        "click_secret_key": "s3cret",
        "click_user_id": "4001",
    }
    values.update(overrides)
    return CommonSettings(**values)


@pytest.mark.parametrize("overrides", [{"store_retry_attempts": 0}, {"order_verifier": "grpc"}])
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValidationError):
        _settings(**overrides)


def test_order_verifier_accepts_http():
    assert _settings(order_verifier="http").order_verifier == "http"
