from __future__ import annotations

import hashlib


MASK_CHAR = "*"
_PHONE_MASK = "***-***-"
_DEFAULT_LOG_SALT = "tenantguard-logging-salt"


def mask_email(value: str) -> str:
    # Keep the first/last local-part characters and the full domain.
    user, sep, domain = value.partition("@")
    if not sep or not domain:
        return value
    if len(user) <= 1:
        masked_user = MASK_CHAR
    else:
        masked_user = user[0] + MASK_CHAR * max(1, len(user) - 2) + user[-1]
    return f"{masked_user}@{domain}"


def mask_phone(value: str) -> str:
    # Too few digits carry no signal worth masking; return input unchanged.
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) < 4:
        return value
    return _PHONE_MASK + digits[-4:]


def hash_for_logging(value: str, salt: str | None = None) -> str:
    """Short one-way correlation id so logs never echo secrets."""
    digest = hashlib.sha256((value + (salt or _DEFAULT_LOG_SALT)).encode("utf-8")).hexdigest()
    return digest[:8]
