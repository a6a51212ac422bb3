"""
Canonical JSON and HMAC signing helpers shared by the idempotency ledger
(request hashing) and webhook delivery (payload signatures).
"""
import hashlib
import hmac
import json
from typing import Any

SIGNATURE_PREFIX = "sha256="


def canonical_json(obj: Any) -> str:
    """Stable JSON text: sorted keys, compact separators, UTF-8 kept as-is."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def sign_payload(secret: str, raw_body: str) -> str:
    """HMAC-SHA256 of the exact bytes sent, hex encoded"""
    return hmac.new(secret.encode("utf-8"), raw_body.encode("utf-8"), hashlib.sha256).hexdigest()


def signature_header(secret: str, raw_body: str) -> str:
    return f"{SIGNATURE_PREFIX}{sign_payload(secret, raw_body)}"


def verify_signature(secret: str, raw_body: str, header_value: str) -> bool:
    """Constant-time check of an ``X-Signature`` header, for subscribers and tests"""
    if not header_value or not header_value.startswith(SIGNATURE_PREFIX):
        return False
    expected = sign_payload(secret, raw_body)
    return hmac.compare_digest(expected, header_value[len(SIGNATURE_PREFIX):])
