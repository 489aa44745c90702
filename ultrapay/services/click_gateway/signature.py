"""Click callback signature verification.

Click signs each callback with MD5 over a fixed concatenation that includes the
merchant secret. MD5 is weak by current standards; it stays because the
processor computes exactly this digest, and changing it here without changing
the Click merchant configuration would reject every callback.
"""

import hashlib
import hmac

from ultrapay.services.click_gateway.schemas import ClickCallback


def canonical_sign_string(callback: ClickCallback, secret_key: str) -> str:
    """Concatenate the signed fields in the order Click uses, no separators."""

    return "".join(
        [
            callback.click_trans_id,
            callback.service_id,
            secret_key,
            callback.merchant_trans_id,
            callback.merchant_prepare_id or "",
            callback.amount,
            str(callback.action),
            callback.sign_time,
        ]
    )


def sign_callback(callback: ClickCallback, secret_key: str) -> str:
    """Lowercase hex digest Click would send as `sign_string`."""

    return hashlib.md5(canonical_sign_string(callback, secret_key).encode("utf-8")).hexdigest()


class SignatureVerifier:
    """Checks that a callback was produced by the holder of the shared secret."""

    def __init__(self, secret_key: str) -> None:
        self.secret_key = secret_key

    def verify(self, callback: ClickCallback) -> bool:
        if not callback.sign_string:
            return False
        expected = sign_callback(callback, self.secret_key)
        return hmac.compare_digest(expected.encode("utf-8"), callback.sign_string.encode("utf-8"))
