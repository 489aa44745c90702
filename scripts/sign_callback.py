"""Build a signed Click callback and optionally post it to the gateway.

Useful for manual Prepare/Complete runs and duplicate-delivery testing.
"""

import argparse
import json
from datetime import datetime

import httpx

from ultrapay.services.click_gateway.schemas import ClickAction, ClickCallback
from ultrapay.services.click_gateway.signature import sign_callback


def build_callback(args: argparse.Namespace) -> dict:
    """Return the form fields Click would post, `sign_string` included."""

    action = ClickAction.PREPARE if args.phase == "prepare" else ClickAction.COMPLETE
    fields = {
        "click_trans_id": args.click_trans_id,
        "service_id": args.service_id,
        "click_paydoc_id": args.click_paydoc_id,
        "merchant_trans_id": args.merchant_trans_id,
        "merchant_prepare_id": args.merchant_prepare_id if action is ClickAction.COMPLETE else "",
        "amount": args.amount,
        "action": int(action),
        "error": args.error,
        "error_note": "Success" if args.error == 0 else "Failed",
        "sign_time": args.sign_time or datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
    }
    fields["sign_string"] = sign_callback(ClickCallback(**fields), args.secret_key)
    return fields


def main() -> None:
    """Parse CLI args, sign one callback, print or post it."""

    parser = argparse.ArgumentParser(description="Sign a Click Prepare/Complete callback.")
    parser.add_argument("phase", choices=["prepare", "complete"])
    parser.add_argument("--secret-key", required=True)
    parser.add_argument("--service-id", required=True)
    parser.add_argument("--merchant-trans-id", required=True)
    parser.add_argument("--amount", required=True)
    parser.add_argument("--click-trans-id", default="1000001")
    parser.add_argument("--click-paydoc-id", default="2000001")
    parser.add_argument("--merchant-prepare-id", default="")
    parser.add_argument("--error", type=int, default=0)
    parser.add_argument("--sign-time", default=None)
    parser.add_argument("--post-to", default=None, help="Gateway base URL, e.g. http://localhost:8010")
    args = parser.parse_args()

    if args.phase == "complete" and not args.merchant_prepare_id:
        raise SystemExit("--merchant-prepare-id is required for complete")

    fields = build_callback(args)
    if args.post_to is None:
        print(json.dumps(fields, indent=2))
        return
    resp = httpx.post(f"{args.post_to.rstrip('/')}/click/{args.phase}", data=fields, timeout=10.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
