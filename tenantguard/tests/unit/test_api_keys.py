from __future__ import annotations

from tenantguard.services.auth.api_keys import (
    KEY_STATUS_ACTIVE,
    KEY_STATUS_REVOKED,
    generate_api_key,
    hash_api_key,
    verify_api_key,
)


def test_generate_api_key_shape() -> None:
    generated = generate_api_key()
    assert generated.secret.startswith("tg_sk_")
    assert generated.prefix in generated.secret
    assert generated.key_hash == hash_api_key(generated.secret)
    assert generated.secret not in generated.key_hash
    assert generate_api_key().secret != generated.secret


def test_verify_requires_match_and_active_status() -> None:
    generated = generate_api_key(prefix="acme")
    assert generated.secret.startswith("acme_sk_")
    assert verify_api_key(generated.secret, key_hash=generated.key_hash, status=KEY_STATUS_ACTIVE)
    assert not verify_api_key(generated.secret, key_hash=generated.key_hash, status=KEY_STATUS_REVOKED)
    assert not verify_api_key(generated.secret + "x", key_hash=generated.key_hash, status=KEY_STATUS_ACTIVE)
