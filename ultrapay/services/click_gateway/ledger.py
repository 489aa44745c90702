"""Redis-backed ledger of in-flight Prepare reservations.

A record lives under `click:prepare:{merchant_prepare_id}` from a successful
Prepare until the first matching Complete consumes it, or until its TTL runs
out. Every gateway replica shares the same Redis, so a redelivered callback
sees the same view regardless of which instance receives it.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import redis
from pydantic import BaseModel, Field, ValidationError, field_validator

from ultrapay.common.logging import logger
from ultrapay.common.metrics import retries_total


class LedgerUnavailableError(RuntimeError):
    """Redis stayed unreachable after the configured retries."""


class PrepareRecord(BaseModel):
    merchant_trans_id: str
    click_trans_id: str
    order_id: str
    amount: str
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @field_validator("amount")
    @classmethod
    def _amount_is_decimal(cls, value: str) -> str:
        try:
            Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"amount is not a number: {value!r}") from exc
        return value

    def matches(self, merchant_trans_id: str, click_trans_id: str, amount: Decimal) -> bool:
        return (
            self.merchant_trans_id == merchant_trans_id
            and self.click_trans_id == click_trans_id
            and Decimal(self.amount) == amount
        )


class ConsumedMarker(BaseModel):
    """Left behind by a consume so its own retry can recover the record."""

    token: str
    record: PrepareRecord


class PrepareLedger:
    """TTL-bounded store with atomic compare-and-consume."""

    KEY_PREFIX = "click:prepare:"
    CONSUMED_PREFIX = "click:consumed:"

    def __init__(
        self,
        rdb: redis.Redis,
        ttl_seconds: int,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
        service_name: str = "click-gateway",
    ) -> None:
        if retry_attempts < 1:
            raise ValueError(f"retry_attempts must be at least 1 (got {retry_attempts})")
        self.rdb = rdb
        self.ttl_seconds = ttl_seconds
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.service_name = service_name

    def _key(self, prepare_id: str) -> str:
        return f"{self.KEY_PREFIX}{prepare_id}"

    def _consumed_key(self, prepare_id: str) -> str:
        return f"{self.CONSUMED_PREFIX}{prepare_id}"

    def _with_retry(self, operation, *args):
        """Run one store operation, retrying connection-level failures."""

        for attempt in range(1, self.retry_attempts + 1):
            try:
                return operation(*args)
            except (redis.ConnectionError, redis.TimeoutError) as exc:
                if attempt == self.retry_attempts:
                    raise LedgerUnavailableError(str(exc)) from exc
                retries_total.labels(service=self.service_name, dependency="redis").inc()
                backoff_seconds = self.retry_backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "prepare ledger retry=%s/%s backoff_s=%s error=%s",
                    attempt,
                    self.retry_attempts,
                    backoff_seconds,
                    exc,
                )
                time.sleep(backoff_seconds)

    def _parse(self, prepare_id: str, raw: str) -> PrepareRecord | None:
        try:
            return PrepareRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("unreadable prepare record prepare_id=%s error=%s", prepare_id, exc)
            return None

    def insert(self, prepare_id: str, record: PrepareRecord) -> None:
        self._with_retry(self._insert, prepare_id, record)

    def _insert(self, prepare_id: str, record: PrepareRecord) -> None:
        self.rdb.set(self._key(prepare_id), record.model_dump_json(), ex=self.ttl_seconds)

    def get(self, prepare_id: str) -> PrepareRecord | None:
        raw = self._with_retry(self.rdb.get, self._key(prepare_id))
        return self._parse(prepare_id, raw) if raw is not None else None

    def consume(
        self, prepare_id: str, merchant_trans_id: str, click_trans_id: str, amount: Decimal
    ) -> PrepareRecord | None:
        """Delete and return the record if it matches the Complete callback.

        Returns None when the record is missing, expired, already consumed,
        unreadable or only partially matching. Of several concurrent callers
        for one prepare id, at most one gets the record back.

        The delete also writes a marker tagged with a per-call token. If the
        EXEC reply is lost and the call is retried, the retry finds its own
        marker and still returns the record; any other caller does not.
        """

        token = uuid4().hex
        return self._with_retry(self._consume, prepare_id, merchant_trans_id, click_trans_id, amount, token)

    def _consume(
        self, prepare_id: str, merchant_trans_id: str, click_trans_id: str, amount: Decimal, token: str
    ) -> PrepareRecord | None:
        key = self._key(prepare_id)
        with self.rdb.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        return self._own_consumed(prepare_id, token)
                    record = self._parse(prepare_id, raw)
                    if record is None:
                        return None
                    if not record.matches(merchant_trans_id, click_trans_id, amount):
                        logger.warning(
                            "prepare record mismatch prepare_id=%s stored_merchant_trans_id=%s stored_amount=%s",
                            prepare_id,
                            record.merchant_trans_id,
                            record.amount,
                        )
                        return None
                    pipe.multi()
                    pipe.delete(key)
                    pipe.set(
                        self._consumed_key(prepare_id),
                        ConsumedMarker(token=token, record=record).model_dump_json(),
                        ex=self.ttl_seconds,
                    )
                    deleted, _ = pipe.execute()
                    return record if deleted else None
                except redis.WatchError:
                    # Key changed between WATCH and EXEC; re-read decides.
                    continue

    def _own_consumed(self, prepare_id: str, token: str) -> PrepareRecord | None:
        raw = self.rdb.get(self._consumed_key(prepare_id))
        if raw is None:
            return None
        try:
            marker = ConsumedMarker.model_validate_json(raw)
        except ValidationError:
            return None
        if marker.token != token:
            return None
        logger.info("prepare record recovered from lost consume reply prepare_id=%s", prepare_id)
        return marker.record
