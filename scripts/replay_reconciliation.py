"""Retry captures that failed after their prepare record was consumed.

Each item was pushed by the gateway when Click had already moved the funds but
the local capture failed. Captures are idempotent per `click_trans_id`, so an
item that was partly applied can be replayed safely.
"""

import argparse
import json
from decimal import Decimal

import redis

from ultrapay.common.config import settings
from ultrapay.common.db import SessionLocal
from ultrapay.services.click_gateway.capture import ReconciliationQueue, SqlPaymentStore


def replay(queue: ReconciliationQueue, store: SqlPaymentStore, limit: int) -> tuple[int, int]:
    """Replay up to `limit` items; failed ones go back on the queue."""

    replayed = 0
    failed = []
    for _ in range(limit):
        item = queue.pop()
        if item is None:
            break
        try:
            store.capture(
                item["order_id"],
                Decimal(item["amount"]),
                item["click_trans_id"],
                item.get("merchant_trans_id"),
            )
        except Exception as exc:
            print(f"capture still failing order_id={item['order_id']} error={exc}")
            failed.append({**item, "error": str(exc)})
            continue
        print(f"captured order_id={item['order_id']} click_trans_id={item['click_trans_id']}")
        replayed += 1
    for item in failed:
        queue.push(item)
    return replayed, len(failed)


def main() -> None:
    """CLI entrypoint for reconciliation replay."""

    parser = argparse.ArgumentParser(description="Replay failed captures from the reconciliation queue.")
    parser.add_argument("--redis-url", default=settings.redis_url)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    rdb = redis.Redis.from_url(args.redis_url, decode_responses=True)
    queue = ReconciliationQueue(rdb)
    if args.dry_run:
        for raw in rdb.lrange(ReconciliationQueue.KEY, 0, args.limit - 1):
            print(json.dumps(json.loads(raw), indent=2))
        print(f"{queue.size()} item(s) queued; dry run only.")
        return

    replayed, failed = replay(queue, SqlPaymentStore(SessionLocal, settings.service_name), args.limit)
    print(f"replayed={replayed} failed={failed} remaining={queue.size()}")
    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
