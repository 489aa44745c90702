"""Order lookups used by the Prepare phase.

The order service owns order state; the gateway only asks whether a checkout
attempt exists, is still unpaid, and carries exactly the callback amount.
"""

from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation

import httpx
from sqlalchemy import select

from ultrapay.common.logging import logger
from ultrapay.services.click_gateway.models import Payment
from ultrapay.services.click_gateway.schemas import PaymentStatus


class OrderServiceError(RuntimeError):
    """Order lookup failed for a reason other than the order being absent."""


class OrderVerifier(ABC):
    @abstractmethod
    def verify(self, merchant_trans_id: str, amount: Decimal) -> bool:
        """True when the order exists, is unpaid, and its amount equals `amount`."""

    @abstractmethod
    def order_id_for(self, merchant_trans_id: str) -> str | None:
        """Order id behind a merchant transaction id, or None if unknown."""


class SqlOrderVerifier(OrderVerifier):
    """Checks the local `payments` registry written at checkout."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _find(self, db, merchant_trans_id: str) -> Payment | None:
        return db.execute(
            select(Payment).where(Payment.merchant_trans_id == merchant_trans_id)
        ).scalar_one_or_none()

    def verify(self, merchant_trans_id: str, amount: Decimal) -> bool:
        with self.session_factory() as db:
            payment = self._find(db, merchant_trans_id)
            if payment is None:
                logger.info("order verification: unknown merchant_trans_id=%s", merchant_trans_id)
                return False
            if payment.status != PaymentStatus.PENDING.value:
                logger.info(
                    "order verification: merchant_trans_id=%s not payable status=%s",
                    merchant_trans_id,
                    payment.status,
                )
                return False
            return Decimal(payment.amount) == amount

    def order_id_for(self, merchant_trans_id: str) -> str | None:
        with self.session_factory() as db:
            payment = self._find(db, merchant_trans_id)
            return payment.order_id if payment is not None else None


class HttpOrderVerifier(OrderVerifier):
    """Asks the order service over HTTP."""

    def __init__(self, base_url: str, timeout_seconds: float = 5.0, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _fetch(self, merchant_trans_id: str) -> dict | None:
        url = f"{self.base_url}/orders/by-transaction/{merchant_trans_id}"
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                resp = client.get(url)
        except httpx.HTTPError as exc:
            raise OrderServiceError(f"order service unreachable: {exc}") from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise OrderServiceError(f"order lookup failed (status={resp.status_code})")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise OrderServiceError("order service response is not JSON") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("order_id"), str) or "amount" not in payload:
            raise OrderServiceError("order service response malformed")
        return payload

    def verify(self, merchant_trans_id: str, amount: Decimal) -> bool:
        order = self._fetch(merchant_trans_id)
        if order is None:
            return False
        if order.get("payment_status", PaymentStatus.PENDING.value) != PaymentStatus.PENDING.value:
            return False
        try:
            order_amount = Decimal(str(order["amount"]))
        except InvalidOperation as exc:
            raise OrderServiceError(f"order amount is not a number: {order['amount']!r}") from exc
        return order_amount == amount

    def order_id_for(self, merchant_trans_id: str) -> str | None:
        order = self._fetch(merchant_trans_id)
        return order["order_id"] if order is not None else None
