"""HMAC verification for ledger notification webhooks."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a hex HMAC-SHA256 digest, optionally ``sha256=``-prefixed."""

    if not signature or not secret:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected, provided.lower())
