"""
Processor webhook signature verification.

Header format: `t=<unix>,v1=<hex>[,v1=<hex>...]`. The expected signature is
HMAC-SHA256(secret, "<t>." + raw_body) in hex, compared in constant time
against every v1 entry (the processor sends several during secret rotation).
A missing secret always fails.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureVerificationError(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def signature_header(secret: str, body: bytes, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def parse_signature_header(header: str) -> tuple[Optional[str], list[str]]:
    timestamp = None
    v1: list[str] = []
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            v1.append(value)
    return timestamp, v1


def verify_signature(
    body: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """Returns the signed timestamp; raises SignatureVerificationError otherwise."""
    if not secret:
        raise SignatureVerificationError("secret_not_configured")
    if not header:
        raise SignatureVerificationError("missing_signature")

    raw_ts, signatures = parse_signature_header(header)
    if not raw_ts:
        raise SignatureVerificationError("missing_timestamp")
    try:
        timestamp = int(raw_ts)
    except ValueError:
        raise SignatureVerificationError("invalid_timestamp") from None
    if not signatures:
        raise SignatureVerificationError("missing_v1_signature")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise SignatureVerificationError("timestamp_outside_tolerance")

    expected = compute_signature(secret, timestamp, body)
    # Check every candidate so timing does not reveal which entry matched.
    matched = False
    for sig in signatures:
        if hmac.compare_digest(expected, sig):
            matched = True
    if not matched:
        raise SignatureVerificationError("signature_mismatch")
    return timestamp
