"""Transactional outbox helpers.

Rows are claimed with `FOR UPDATE SKIP LOCKED` so several gateway replicas can
run the publisher loop against the same `outbox_events` table.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from ultrapay.common.events import EventEnvelope, KafkaBus
from ultrapay.common.logging import logger
from ultrapay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 30) -> list[dict]:
    """Atomically claim a batch of pending/stale rows for publishing."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        select(table.c.id)
        .where(
            or_(
                table.c.status == "PENDING",
                (table.c.status == "PROCESSING") & (table.c.sent_at.is_not(None)) & (table.c.sent_at < stale_before),
            )
        )
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .cte("claim_ids")
    )
    rows = db.execute(
        update(table)
        .where(table.c.id.in_(select(claim_ids.c.id)))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]


def mark_outbox_sent(db, outbox_model, event_id: str) -> None:
    """Mark one claimed outbox row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc))
    )


def requeue_outbox_event(db, outbox_model, event_id: str) -> None:
    """Return a claimed row to `PENDING` so it can be retried."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == event_id, table.c.status == "PROCESSING")
        .values(status="PENDING", sent_at=None)
    )


def update_outbox_backlog_metrics(db, outbox_model, service_name: str) -> None:
    """Update gauges for pending outbox depth and oldest age."""

    table = outbox_model.__table__
    pending_statuses = ("PENDING", "PROCESSING")
    pending_count, oldest_pending = db.execute(
        select(func.count(), func.min(table.c.created_at)).where(table.c.status.in_(pending_statuses))
    ).one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (datetime.now(timezone.utc) - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)


async def publish_outbox_once(session_factory, outbox_model, kafka: KafkaBus, service_name: str) -> int:
    """Claim one batch and publish it; failed rows go back to `PENDING`."""

    with session_factory() as db:
        rows = claim_outbox_batch(db, outbox_model, limit=100)
        update_outbox_backlog_metrics(db, outbox_model, service_name)
        db.commit()
    for row in rows:
        try:
            await kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
            with session_factory() as db:
                mark_outbox_sent(db, outbox_model, row["id"])
                db.commit()
        except Exception as exc:
            logger.exception("outbox publish failed id=%s: %s", row["id"], exc)
            with session_factory() as db:
                requeue_outbox_event(db, outbox_model, row["id"])
                db.commit()
    return len(rows)


async def run_outbox_publisher(session_factory, outbox_model, kafka: KafkaBus, service_name: str) -> None:
    """Continuously publish outbox rows until cancelled."""

    while True:
        try:
            await publish_outbox_once(session_factory, outbox_model, kafka, service_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("outbox_loop_error error=%s", exc)
            await asyncio.sleep(2)
        await asyncio.sleep(0.5)
