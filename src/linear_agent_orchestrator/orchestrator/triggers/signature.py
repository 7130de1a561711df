"""Webhook signature verification (HMAC-SHA256, hex digest)."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "Linear-Signature"
LEGACY_SIGNATURE_HEADER = "X-Linear-Signature"


def _as_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(body: bytes | str, secret: str) -> str:
    return hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, signature: str | None, secret: str | None) -> bool:
    """Return True only if `signature` is the HMAC of the exact `body` under `secret`.

    An unconfigured secret or a missing signature fails closed.
    """

    if not secret or not signature:
        return False
    expected = compute_signature(body, secret)
    # Compared as bytes: compare_digest rejects non-ASCII str arguments.
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
