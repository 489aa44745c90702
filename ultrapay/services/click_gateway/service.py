"""Click two-phase payment confirmation.

Click calls Prepare once the user has paid on its site and Complete to
finalize. Prepare reserves a `merchant_prepare_id` in the shared ledger;
Complete consumes that reservation atomically and captures the payment, so a
retried or concurrently redelivered Complete can capture at most once.
"""

import time
from decimal import Decimal
from urllib.parse import urlencode
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from ultrapay.common.logging import click_trans_id_ctx, logger, merchant_trans_id_ctx
from ultrapay.common.metrics import (
    capture_failures_total,
    duplicate_completes_total,
    payment_initiations_total,
    webhook_latency_seconds,
    webhook_requests_total,
)
from ultrapay.common.tracing import get_tracer
from ultrapay.services.click_gateway.capture import (
    CaptureError,
    PaymentCaptureExecutor,
    ReconciliationQueue,
    SqlPaymentStore,
)
from ultrapay.services.click_gateway.ledger import LedgerUnavailableError, PrepareLedger, PrepareRecord
from ultrapay.services.click_gateway.orders import OrderServiceError, OrderVerifier
from ultrapay.services.click_gateway.schemas import (
    ClickCallback,
    ClickResult,
    CompleteResult,
    PaymentInitiation,
    PaymentInitiationRequest,
    PaymentStatus,
    PaymentStatusView,
    PrepareResult,
)
from ultrapay.services.click_gateway.signature import SignatureVerifier

tracer = get_tracer("ultrapay.click_gateway")

# Failures the processor should see as a retryable internal error.
TRANSIENT_ERRORS = (LedgerUnavailableError, OrderServiceError, SQLAlchemyError)


def new_prepare_id(merchant_trans_id: str) -> str:
    return f"{merchant_trans_id}_{int(time.time() * 1000)}_{uuid4().hex[:12]}"


class ClickGatewayService:
    """Builds payment URLs and runs the Prepare/Complete webhook phases."""

    def __init__(
        self,
        *,
        merchant_id: str,
        service_id: str,
        endpoint: str,
        verifier: SignatureVerifier,
        ledger: PrepareLedger,
        orders: OrderVerifier,
        executor: PaymentCaptureExecutor,
        payments: SqlPaymentStore | None = None,
        reconciliation: ReconciliationQueue | None = None,
        service_name: str = "click-gateway",
    ) -> None:
        self.merchant_id = merchant_id
        self.service_id = service_id
        self.endpoint = endpoint.rstrip("/")
        self.verifier = verifier
        self.ledger = ledger
        self.orders = orders
        self.executor = executor
        self.payments = payments
        self.reconciliation = reconciliation
        self.service_name = service_name

    def _count(self, phase: str, result: ClickResult) -> None:
        webhook_requests_total.labels(service=self.service_name, phase=phase, result=result.name).inc()

    def payment_url(self, req: PaymentInitiationRequest) -> str:
        params = urlencode(
            {
                "service_id": self.service_id,
                "merchant_id": self.merchant_id,
                "amount": str(req.amount),
                "transaction_param": req.merchant_trans_id,
                "return_url": req.return_url,
                "cancel_url": req.cancel_url,
            }
        )
        return f"{self.endpoint}/services/pay?{params}"

    def create_payment(self, req: PaymentInitiationRequest) -> PaymentInitiation:
        """Return the redirect URL for one checkout attempt; never calls Click."""

        logger.info(
            "creating click payment order_id=%s amount=%s user_id=%s",
            req.order_id,
            req.amount,
            req.user_id,
        )
        try:
            if req.amount <= 0:
                raise ValueError("amount must be positive")
            for name in ("order_id", "user_id", "merchant_trans_id"):
                if not getattr(req, name):
                    raise ValueError(f"{name} must not be empty")
            if not self.service_id or not self.merchant_id:
                raise ValueError("click merchant configuration is missing")
            url = self.payment_url(req)
        except ValueError as exc:
            logger.error("click payment creation failed order_id=%s error=%s", req.order_id, exc)
            return PaymentInitiation(success=False, error=str(exc))
        payment_initiations_total.labels(service=self.service_name).inc()
        return PaymentInitiation(success=True, payment_url=url, transaction_id=req.merchant_trans_id)

    def handle_prepare(self, callback: ClickCallback) -> PrepareResult:
        click_trans_id_ctx.set(callback.click_trans_id)
        merchant_trans_id_ctx.set(callback.merchant_trans_id)
        with tracer.start_as_current_span("click.prepare"), webhook_latency_seconds.labels(
            service=self.service_name, phase="prepare"
        ).time():
            result, prepare_id = self._prepare(callback)
        self._count("prepare", result)
        return PrepareResult(
            click_trans_id=callback.click_trans_id,
            merchant_trans_id=callback.merchant_trans_id,
            merchant_prepare_id=prepare_id,
            result=result,
        )

    def _prepare(self, callback: ClickCallback) -> tuple[ClickResult, str]:
        logger.info("handling click prepare amount=%s", callback.amount)
        if not self.verifier.verify(callback):
            logger.warning("click prepare signature verification failed")
            return ClickResult.INVALID_SIGNATURE, ""

        amount = callback.amount_value
        try:
            order_id = None
            if self.orders.verify(callback.merchant_trans_id, amount):
                order_id = self.orders.order_id_for(callback.merchant_trans_id)
            if order_id is None:
                logger.warning("click order verification failed amount=%s", callback.amount)
                return ClickResult.ORDER_MISMATCH, ""

            prepare_id = new_prepare_id(callback.merchant_trans_id)
            self.ledger.insert(
                prepare_id,
                PrepareRecord(
                    merchant_trans_id=callback.merchant_trans_id,
                    click_trans_id=callback.click_trans_id,
                    order_id=order_id,
                    amount=str(amount),
                ),
            )
        except TRANSIENT_ERRORS as exc:
            logger.exception("click prepare failed on a dependency: %s", exc)
            return ClickResult.INTERNAL_ERROR, ""
        except Exception as exc:
            logger.exception("click prepare failed unexpectedly: %s", exc)
            return ClickResult.INTERNAL_ERROR, ""

        logger.info("click prepare successful merchant_prepare_id=%s", prepare_id)
        return ClickResult.SUCCESS, prepare_id

    def handle_complete(self, callback: ClickCallback) -> CompleteResult:
        click_trans_id_ctx.set(callback.click_trans_id)
        merchant_trans_id_ctx.set(callback.merchant_trans_id)
        with tracer.start_as_current_span("click.complete"), webhook_latency_seconds.labels(
            service=self.service_name, phase="complete"
        ).time():
            result, confirm_id = self._complete(callback)
        self._count("complete", result)
        return CompleteResult(
            click_trans_id=callback.click_trans_id,
            merchant_trans_id=callback.merchant_trans_id,
            merchant_confirm_id=confirm_id,
            result=result,
        )

    def _complete(self, callback: ClickCallback) -> tuple[ClickResult, str]:
        logger.info(
            "handling click complete merchant_prepare_id=%s amount=%s",
            callback.merchant_prepare_id,
            callback.amount,
        )
        if not self.verifier.verify(callback):
            logger.warning("click complete signature verification failed")
            return ClickResult.INVALID_SIGNATURE, ""

        amount = callback.amount_value
        try:
            record = None
            if callback.merchant_prepare_id:
                record = self.ledger.consume(
                    callback.merchant_prepare_id,
                    callback.merchant_trans_id,
                    callback.click_trans_id,
                    amount,
                )
        except LedgerUnavailableError as exc:
            logger.exception("click complete could not reach prepare ledger: %s", exc)
            return ClickResult.INTERNAL_ERROR, ""
        except Exception as exc:
            logger.exception("click complete failed reading prepare ledger: %s", exc)
            return ClickResult.INTERNAL_ERROR, ""
        if record is None:
            # Expected for redelivered Completes.
            logger.info("click prepare transaction not found merchant_prepare_id=%s", callback.merchant_prepare_id)
            duplicate_completes_total.labels(service=self.service_name).inc()
            return ClickResult.NOT_FOUND, ""

        if callback.error < 0:
            self._fail_consumed(callback, record)
            return ClickResult.CANCELLED, ""

        try:
            self.executor.capture(record.order_id, amount, callback.click_trans_id, record.merchant_trans_id)
        except Exception as exc:
            self._escalate_capture_failure(callback, record, exc)
        else:
            logger.info("click complete successful order_id=%s", record.order_id)
        return ClickResult.SUCCESS, callback.merchant_prepare_id

    def _fail_consumed(self, callback: ClickCallback, record: PrepareRecord) -> None:
        logger.info(
            "click reported failure error=%s error_note=%s order_id=%s",
            callback.error,
            callback.error_note,
            record.order_id,
        )
        try:
            self.executor.fail(
                record.order_id,
                f"{callback.error}:{callback.error_note}",
                callback.click_trans_id,
                record.merchant_trans_id,
            )
        except (CaptureError, *TRANSIENT_ERRORS) as exc:
            logger.exception("could not mark payment failed order_id=%s: %s", record.order_id, exc)

    def _escalate_capture_failure(self, callback: ClickCallback, record: PrepareRecord, exc: Exception) -> None:
        """Hand a lost capture to reconciliation; Click has already moved the funds."""

        capture_failures_total.labels(service=self.service_name).inc()
        item = {
            "order_id": record.order_id,
            "merchant_trans_id": record.merchant_trans_id,
            "merchant_prepare_id": callback.merchant_prepare_id,
            "click_trans_id": callback.click_trans_id,
            "click_paydoc_id": callback.click_paydoc_id,
            "amount": str(callback.amount_value),
            "error": str(exc),
        }
        logger.critical("capture failed after prepare was consumed item=%s", item, exc_info=exc)
        if self.reconciliation is None:
            return
        try:
            self.reconciliation.push(item)
        except Exception:
            logger.critical("reconciliation enqueue failed item=%s", item, exc_info=True)

    def get_payment_status(self, transaction_id: str) -> PaymentStatusView:
        """Current status of a payment; lookup failures read as `failed`."""

        logger.info("getting payment status transaction_id=%s", transaction_id)
        if self.payments is None:
            return PaymentStatusView(status=PaymentStatus.FAILED, note="Status store not configured")
        try:
            payment = self.payments.find(transaction_id)
        except SQLAlchemyError as exc:
            logger.error("payment status lookup failed transaction_id=%s error=%s", transaction_id, exc)
            return PaymentStatusView(status=PaymentStatus.FAILED, note="Status check failed")
        if payment is None:
            return PaymentStatusView(status=PaymentStatus.FAILED, note="Payment not found")
        status = PaymentStatus(payment.status)
        amount = None
        if status is PaymentStatus.COMPLETED and payment.captured_amount is not None:
            amount = Decimal(payment.captured_amount)
        return PaymentStatusView(status=status, amount=amount, note=payment.failure_reason)
