from __future__ import annotations

import binascii
from dataclasses import dataclass
import hashlib
import hmac
import re
import time


SIGNATURE_PREFIX = "sha256="
# ASCII digits only; bounded so int() never hits the digit-count limit.
_TIMESTAMP_RE = re.compile(r"-?[0-9]{1,18}")

REASON_OK = "ok"
REASON_MISSING_SECRET = "missing_secret"
REASON_MISSING_SIGNATURE = "missing_signature"
REASON_MISSING_TIMESTAMP = "missing_timestamp"
REASON_INVALID_TIMESTAMP = "invalid_timestamp"
REASON_TIMESTAMP_OUT_OF_WINDOW = "timestamp_out_of_window"
REASON_MALFORMED_SIGNATURE = "malformed_signature"
REASON_LENGTH_MISMATCH = "length_mismatch"
REASON_SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class SignatureCheck:
    # Explicit verification outcome so callers never parse exceptions.
    ok: bool
    reason: str


def _as_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def _mac(raw_body: bytes | str, timestamp: str, secret: bytes | str) -> bytes:
    # Canonical signed payload is "<timestamp>\n<raw body bytes>".
    payload = timestamp.encode("utf-8") + b"\n" + _as_bytes(raw_body)
    return hmac.new(_as_bytes(secret), payload, hashlib.sha256).digest()


def sign_body(raw_body: bytes | str, timestamp: str, secret: bytes | str) -> str:
    """Return the ``sha256=<hex>`` signature header value for a payload."""
    return SIGNATURE_PREFIX + _mac(raw_body, timestamp, secret).hex()


def canonical_signature(signature_header: str) -> str:
    # One replay key per digest regardless of prefix, case or padding whitespace.
    value = signature_header.strip()
    if value.startswith(SIGNATURE_PREFIX):
        value = value[len(SIGNATURE_PREFIX):]
    return SIGNATURE_PREFIX + value.strip().lower()


def _parse_timestamp(value: str) -> int | None:
    stripped = value.strip()
    if not _TIMESTAMP_RE.fullmatch(stripped):
        return None
    return int(stripped)


def check_signature(
    raw_body: bytes | str,
    timestamp_header: str | None,
    signature_header: str | None,
    secret: bytes | str | None,
    max_skew_seconds: int,
    *,
    now: float | None = None,
) -> SignatureCheck:
    """Validate an HMAC-signed webhook payload.

    Never raises: every failure maps to a ``SignatureCheck`` reason. The
    final comparison is constant-time over equal-length digests.
    """
    if not secret:
        return SignatureCheck(ok=False, reason=REASON_MISSING_SECRET)
    if not signature_header:
        return SignatureCheck(ok=False, reason=REASON_MISSING_SIGNATURE)
    if not timestamp_header:
        return SignatureCheck(ok=False, reason=REASON_MISSING_TIMESTAMP)
    timestamp = _parse_timestamp(timestamp_header)
    if timestamp is None:
        return SignatureCheck(ok=False, reason=REASON_INVALID_TIMESTAMP)
    current = int(now if now is not None else time.time())
    if abs(current - timestamp) > max_skew_seconds:
        return SignatureCheck(ok=False, reason=REASON_TIMESTAMP_OUT_OF_WINDOW)

    received_hex = canonical_signature(signature_header)[len(SIGNATURE_PREFIX):]
    try:
        received = binascii.unhexlify(received_hex)
    except (binascii.Error, ValueError):
        return SignatureCheck(ok=False, reason=REASON_MALFORMED_SIGNATURE)

    expected = _mac(raw_body, timestamp_header.strip(), secret)
    if len(received) != len(expected):
        return SignatureCheck(ok=False, reason=REASON_LENGTH_MISMATCH)
    if not hmac.compare_digest(received, expected):
        return SignatureCheck(ok=False, reason=REASON_SIGNATURE_MISMATCH)
    return SignatureCheck(ok=True, reason=REASON_OK)


def verify_signature(
    raw_body: bytes | str,
    timestamp_header: str | None,
    signature_header: str | None,
    secret: bytes | str | None,
    max_skew_seconds: int,
    *,
    now: float | None = None,
) -> bool:
    return check_signature(
        raw_body,
        timestamp_header,
        signature_header,
        secret,
        max_skew_seconds,
        now=now,
    ).ok
