from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import secrets


KEY_STATUS_ACTIVE = "active"
KEY_STATUS_REVOKED = "revoked"


@dataclass(frozen=True)
class GeneratedApiKey:
    # `secret` is shown once; only `key_hash` is persisted.
    secret: str
    prefix: str
    key_hash: str


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(prefix: str = "tg") -> GeneratedApiKey:
    raw = secrets.token_urlsafe(24)
    secret = f"{prefix}_sk_{raw}"
    return GeneratedApiKey(secret=secret, prefix=raw[:8], key_hash=hash_api_key(secret))


def verify_api_key(secret: str, *, key_hash: str, status: str) -> bool:
    # Hash first, then compare in constant time regardless of status.
    matches = hmac.compare_digest(hash_api_key(secret), key_hash)
    return matches and status == KEY_STATUS_ACTIVE
