from __future__ import annotations

import logging
import os
import threading
from typing import Iterable, Mapping

from tenantguard.core.errors import ConfigurationError, KeyResolutionError, RetiredKeyError
from tenantguard.services.crypto.utils import decode_key_material


logger = logging.getLogger(__name__)

KEK_ENV_PREFIX = "DATA_KEK_"
KEK_BYTES = 32
# Reserved by the serialized format.
_FORBIDDEN_VERSION_CHARS = (";", "=")


def validate_version(version: str) -> str:
    normalized = version.strip()
    if not normalized or any(ch in normalized for ch in _FORBIDDEN_VERSION_CHARS):
        raise ConfigurationError(f"Invalid KEK version identifier: {version!r}")
    return normalized


class KeyRegistry:
    """Versioned key-encryption keys with a separately configured current version.

    Every version stays resolvable until it is explicitly retired. Promoting a
    new current version is a single reference swap, so concurrent readers
    always observe a current version whose key resolves.
    """

    def __init__(
        self,
        keys: Mapping[str, bytes],
        current_version: str,
        *,
        retired: Iterable[str] = (),
    ) -> None:
        self._keys: dict[str, bytes] = {}
        for version, key in keys.items():
            self._keys[validate_version(version)] = _check_key_length(version, key)
        self._retired: frozenset[str] = frozenset(validate_version(item) for item in retired)
        self._lock = threading.Lock()
        current = validate_version(current_version)
        self._ensure_usable(current)
        self._current = current

    @classmethod
    def from_env(
        cls,
        current_version: str,
        *,
        retired: Iterable[str] = (),
        environ: Mapping[str, str] | None = None,
    ) -> "KeyRegistry":
        # Resolve every DATA_KEK_<version> present so historical values stay decryptable.
        source = os.environ if environ is None else environ
        keys: dict[str, bytes] = {}
        for name, value in source.items():
            if not name.startswith(KEK_ENV_PREFIX) or name == "DATA_KEK_VERSION" or name == "DATA_KEK_RETIRED":
                continue
            version = name[len(KEK_ENV_PREFIX):]
            try:
                keys[version] = decode_key_material(value)
            except ValueError as exc:
                raise ConfigurationError(f"{name} is not valid base64 or hex key material") from exc
        return cls(keys, current_version, retired=retired)

    @property
    def current_version(self) -> str:
        return self._current

    def versions(self) -> list[str]:
        return sorted(version for version in self._keys if version not in self._retired)

    def is_retired(self, version: str) -> bool:
        return version in self._retired

    def resolve(self, version: str) -> bytes:
        if version in self._retired:
            raise RetiredKeyError(version)
        key = self._keys.get(version)
        if key is None:
            logger.error("kek_resolution_failed version=%s", version)
            raise KeyResolutionError(version)
        return key

    def promote(self, version: str) -> None:
        # New writes switch to `version`; older versions remain readable.
        resolved = validate_version(version)
        with self._lock:
            self._ensure_usable(resolved)
            previous = self._current
            self._current = resolved
        logger.info("kek_promoted from_version=%s to_version=%s", previous, resolved)

    def retire(self, version: str) -> None:
        # Callers must confirm the rotation sweep finished before retiring.
        resolved = validate_version(version)
        with self._lock:
            if resolved == self._current:
                raise ConfigurationError("Cannot retire the current KEK version")
            if resolved not in self._keys:
                raise KeyResolutionError(resolved)
            self._retired = self._retired | {resolved}
        logger.info("kek_retired version=%s", resolved)

    def _ensure_usable(self, version: str) -> None:
        if version in self._retired:
            raise RetiredKeyError(version)
        if version not in self._keys:
            raise KeyResolutionError(version)


def _check_key_length(version: str, key: bytes) -> bytes:
    if len(key) != KEK_BYTES:
        raise ConfigurationError(f"KEK {version} must be {KEK_BYTES} bytes, got {len(key)}")
    return key
