from __future__ import annotations

import binascii
from dataclasses import dataclass, field
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantguard.core.errors import CiphertextIntegrityError
from tenantguard.services.crypto.keyring import KeyRegistry, validate_version
from tenantguard.services.crypto.utils import b64url_decode, b64url_encode


logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
# Field order is part of the stored format; new fields may only be appended.
_FIELD_ORDER = ("v", "iv", "ct", "tag")


@dataclass(frozen=True)
class EncryptedValue:
    version: str
    iv: bytes
    ciphertext: bytes
    tag: bytes
    # Fields written by newer releases; preserved but not interpreted.
    extra: tuple[tuple[str, str], ...] = field(default=())

    def serialize(self) -> str:
        parts = [
            f"v={self.version}",
            f"iv={b64url_encode(self.iv)}",
            f"ct={b64url_encode(self.ciphertext)}",
            f"tag={b64url_encode(self.tag)}",
        ]
        parts.extend(f"{name}={value}" for name, value in self.extra)
        return ";".join(parts)

    @classmethod
    def parse(cls, serialized: str) -> "EncryptedValue":
        fields: list[tuple[str, str]] = []
        for part in serialized.strip().split(";"):
            name, sep, value = part.partition("=")
            if not sep:
                raise CiphertextIntegrityError("encrypted value segment is not key=value")
            fields.append((name, value))
        names = tuple(name for name, _ in fields[: len(_FIELD_ORDER)])
        if names != _FIELD_ORDER:
            raise CiphertextIntegrityError("encrypted value fields are missing or out of order")
        values = dict(fields[: len(_FIELD_ORDER)])
        try:
            iv = b64url_decode(values["iv"])
            ciphertext = b64url_decode(values["ct"])
            tag = b64url_decode(values["tag"])
        except (binascii.Error, ValueError) as exc:
            raise CiphertextIntegrityError("encrypted value is not valid base64url") from exc
        if len(iv) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CiphertextIntegrityError("encrypted value has invalid nonce or tag length")
        return cls(
            version=values["v"],
            iv=iv,
            ciphertext=ciphertext,
            tag=tag,
            extra=tuple(fields[len(_FIELD_ORDER):]),
        )


class ColumnCipher:
    """AES-256-GCM column encryption keyed by versioned KEKs."""

    def __init__(self, registry: KeyRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> KeyRegistry:
        return self._registry

    def encrypt(self, plaintext: str, version: str | None = None) -> str:
        resolved_version = validate_version(version) if version else self._registry.current_version
        key = self._registry.resolve(resolved_version)
        # Fresh CSPRNG nonce per call; never derived from shared counters.
        nonce = os.urandom(NONCE_BYTES)
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedValue(
            version=resolved_version,
            iv=nonce,
            ciphertext=sealed[:-TAG_BYTES],
            tag=sealed[-TAG_BYTES:],
        ).serialize()

    def decrypt(self, serialized: str) -> str:
        value = EncryptedValue.parse(serialized)
        # Key resolution errors propagate; they signal missing provisioning, not bad data.
        key = self._registry.resolve(value.version)
        try:
            plaintext = AESGCM(key).decrypt(value.iv, value.ciphertext + value.tag, None)
        except InvalidTag as exc:
            logger.error("column_decrypt_failed version=%s reason=auth_tag_mismatch", value.version)
            raise CiphertextIntegrityError("encrypted value failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CiphertextIntegrityError("decrypted value is not valid UTF-8") from exc

    def version_of(self, serialized: str) -> str:
        return EncryptedValue.parse(serialized).version

    def needs_rotation(self, serialized: str) -> bool:
        return self.version_of(serialized) != self._registry.current_version

    def reencrypt(self, serialized: str) -> str | None:
        # Already on the current version: nothing to do.
        if not self.needs_rotation(serialized):
            return None
        return self.encrypt(self.decrypt(serialized))
