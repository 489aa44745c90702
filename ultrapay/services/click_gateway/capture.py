"""Payment capture executor and reconciliation queue.

`SqlPaymentStore` owns the `payments` table: checkout registers a `pending`
row, the Complete phase moves it to `completed` exactly once, and status
queries read it back.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import redis
from sqlalchemy import or_, select, update

from ultrapay.common.events import EventEnvelope
from ultrapay.common.logging import logger, trace_id_ctx
from ultrapay.common.metrics import payment_captures_total
from ultrapay.common.state_machine import validate_transition
from ultrapay.services.click_gateway.models import OutboxEvent, Payment, PaymentTimeline
from ultrapay.services.click_gateway.schemas import PaymentInitiationRequest, PaymentStatus


class CaptureError(RuntimeError):
    """Capture could not be applied to the order's payment."""


class PaymentCaptureExecutor(ABC):
    @abstractmethod
    def capture(
        self, order_id: str, amount: Decimal, click_trans_id: str, merchant_trans_id: str | None = None
    ) -> None:
        """Mark the order's payment `completed`; repeating the same capture is a no-op."""

    @abstractmethod
    def fail(
        self, order_id: str, reason: str, click_trans_id: str, merchant_trans_id: str | None = None
    ) -> None:
        """Mark the order's pending payment `failed`."""


class SqlPaymentStore(PaymentCaptureExecutor):
    def __init__(self, session_factory, service_name: str = "click-gateway") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def register(self, req: PaymentInitiationRequest) -> Payment:
        """Create the `pending` row once per merchant transaction id."""

        with self.session_factory() as db:
            existing = db.execute(
                select(Payment).where(Payment.merchant_trans_id == req.merchant_trans_id)
            ).scalar_one_or_none()
            if existing:
                if existing.order_id != req.order_id or Decimal(existing.amount) != req.amount:
                    raise ValueError(f"merchant_trans_id {req.merchant_trans_id} already used for another checkout")
                return existing

            payment = Payment(
                order_id=req.order_id,
                user_id=req.user_id,
                merchant_trans_id=req.merchant_trans_id,
                amount=req.amount,
                status=PaymentStatus.PENDING.value,
                state_version=0,
            )
            db.add(payment)
            db.flush()
            db.add(
                PaymentTimeline(
                    payment_id=payment.payment_id,
                    from_state=None,
                    to_state=PaymentStatus.PENDING.value,
                    reason="checkout_started",
                )
            )
            db.commit()
            return payment

    def find(self, transaction_id: str) -> Payment | None:
        """Resolve an order id or merchant transaction id to its payment.

        An order may have several checkout attempts; the completed one wins,
        otherwise the most recent attempt is returned.
        """

        with self.session_factory() as db:
            payments = (
                db.execute(
                    select(Payment)
                    .where(or_(Payment.order_id == transaction_id, Payment.merchant_trans_id == transaction_id))
                    .order_by(Payment.created_at.desc())
                )
                .scalars()
                .all()
            )
        for payment in payments:
            if payment.status == PaymentStatus.COMPLETED.value:
                return payment
        return payments[0] if payments else None

    def _payments_for(self, db, order_id: str, merchant_trans_id: str | None) -> list[Payment]:
        query = select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at)
        if merchant_trans_id is not None:
            query = query.where(Payment.merchant_trans_id == merchant_trans_id)
        return list(db.execute(query).scalars().all())

    def _transition(self, db, payment: Payment, new_status: str, reason: str, source_trans_id: str, **values) -> None:
        """Apply one validated status change guarded by `state_version`."""

        validate_transition(payment.status, new_status)
        from_status = payment.status
        current_version = payment.state_version

        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == from_status,
                Payment.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CaptureError(
                f"concurrent update for payment {payment.payment_id} (expected version {current_version})"
            )

        payment.status = new_status
        payment.state_version = current_version + 1
        for name, value in values.items():
            setattr(payment, name, value)
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                click_trans_id=source_trans_id,
            )
        )

    def capture(
        self, order_id: str, amount: Decimal, click_trans_id: str, merchant_trans_id: str | None = None
    ) -> None:
        with self.session_factory() as db:
            payments = self._payments_for(db, order_id, merchant_trans_id)
            for payment in payments:
                if payment.status != PaymentStatus.COMPLETED.value:
                    continue
                if payment.click_trans_id == click_trans_id:
                    logger.info("capture already applied order_id=%s click_trans_id=%s", order_id, click_trans_id)
                    return
                raise CaptureError(f"order {order_id} already captured by click_trans_id={payment.click_trans_id}")

            candidates = [
                p for p in payments if p.status == PaymentStatus.PENDING.value and Decimal(p.amount) == amount
            ]
            if not candidates:
                raise CaptureError(f"no pending payment for order {order_id} with amount {amount}")
            payment = candidates[0]
            self._transition(
                db,
                payment,
                PaymentStatus.COMPLETED.value,
                "click_complete",
                click_trans_id,
                click_trans_id=click_trans_id,
                captured_amount=amount,
            )
            db.add(
                OutboxEvent(
                    aggregate_type="payment",
                    aggregate_id=payment.payment_id,
                    event_type="payments.captured",
                    topic="payments.captured",
                    payload=EventEnvelope(
                        event_type="payments.captured",
                        aggregate_id=payment.payment_id,
                        trace_id=trace_id_ctx.get() or str(uuid4()),
                        payload={
                            "order_id": payment.order_id,
                            "merchant_trans_id": payment.merchant_trans_id,
                            "click_trans_id": click_trans_id,
                            "amount": str(amount),
                        },
                    ).model_dump(),
                )
            )
            db.commit()
        payment_captures_total.labels(service=self.service_name).inc()

    def fail(
        self, order_id: str, reason: str, click_trans_id: str, merchant_trans_id: str | None = None
    ) -> None:
        with self.session_factory() as db:
            pending = [
                p
                for p in self._payments_for(db, order_id, merchant_trans_id)
                if p.status == PaymentStatus.PENDING.value
            ]
            if not pending:
                logger.info("no pending payment to fail order_id=%s", order_id)
                return
            self._transition(
                db,
                pending[0],
                PaymentStatus.FAILED.value,
                f"click_failed:{reason}",
                click_trans_id,
                failure_reason=reason,
            )
            db.commit()


class ReconciliationQueue:
    """Redis list of captures that need manual or scripted follow-up."""

    KEY = "click:reconciliation"

    def __init__(self, rdb: redis.Redis) -> None:
        self.rdb = rdb

    def push(self, item: dict) -> None:
        self.rdb.lpush(self.KEY, json.dumps(item))

    def pop(self) -> dict | None:
        raw = self.rdb.rpop(self.KEY)
        return json.loads(raw) if raw is not None else None

    def size(self) -> int:
        return int(self.rdb.llen(self.KEY))
