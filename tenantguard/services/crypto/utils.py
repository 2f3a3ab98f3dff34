from __future__ import annotations

import base64
import binascii
import hashlib


def decode_key_material(value: str) -> bytes:
    """Decode ``base64:``-prefixed, base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if stripped.startswith("base64:"):
        stripped = stripped[len("base64:"):]
    if not stripped:
        raise ValueError("key material is empty")
    if len(stripped) == 64:
        try:
            return bytes.fromhex(stripped)
        except ValueError:
            pass
    try:
        return base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError):
        try:
            return b64url_decode(stripped)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def b64url_encode(value: bytes) -> str:
    # Unpadded base64url, matching the serialized column format.
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    # Accept both padded and unpadded input.
    stripped = value.strip().rstrip("=")
    padded = stripped + "=" * (-len(stripped) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def sha256_hex(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()
