from tenantguard.services.security.pii import hash_for_logging, mask_email, mask_phone
from tenantguard.services.security.signatures import (
    SignatureCheck,
    canonical_signature,
    check_signature,
    sign_body,
    verify_signature,
)

__all__ = [
    "SignatureCheck",
    "canonical_signature",
    "check_signature",
    "hash_for_logging",
    "mask_email",
    "mask_phone",
    "sign_body",
    "verify_signature",
]
