from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
from pathlib import Path, PurePosixPath
import time
from typing import Protocol
from urllib.parse import quote, urlencode
from uuid import uuid4

from tenantguard.core.errors import EvidenceIntegrityError, EvidenceNotFoundError, StoreUnavailableError
from tenantguard.domain.models import EvidenceArtifact
from tenantguard.services.crypto.utils import sha256_hex
from tenantguard.services.resilience import with_store_timeout


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadGrant:
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class StoredEvidence:
    path: str
    sha256: str
    size_bytes: int


class EvidenceStorage(Protocol):
    name: str

    async def put(self, path: str, data: bytes) -> None:
        ...

    async def fetch(self, path: str) -> bytes:
        ...

    async def delete(self, path: str) -> None:
        ...

    def signed_url(self, path: str, *, expires_at: int) -> str:
        ...


def _safe_relative(path: str) -> PurePosixPath:
    # Reject absolute or parent-traversing object paths.
    relative = PurePosixPath(path)
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise ValueError(f"Invalid evidence path: {path}")
    return relative


def _url_signature(secret: str, path: str, expires_at: int) -> str:
    message = f"{path}\n{expires_at}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class LocalEvidenceStorage:
    name = "evidence_storage"

    def __init__(self, base_dir: str | Path, *, url_secret: str, base_url: str) -> None:
        self._base_dir = Path(base_dir)
        self._url_secret = url_secret
        self._base_url = base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        return self._base_dir.joinpath(*_safe_relative(path).parts)

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)

    async def fetch(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as exc:
            raise EvidenceNotFoundError(f"evidence object missing: {path}") from exc

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(target.unlink, missing_ok=True)

    def signed_url(self, path: str, *, expires_at: int) -> str:
        query = urlencode({"expires": expires_at, "signature": _url_signature(self._url_secret, path, expires_at)})
        return f"{self._base_url}/{quote(path)}?{query}"

    def verify_signed_url(self, path: str, *, expires_at: int, signature: str, now: float | None = None) -> bool:
        current = now if now is not None else time.time()
        if expires_at < current:
            return False
        expected = _url_signature(self._url_secret, path, expires_at)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def build_evidence_path(tenant_id: str, artifact_id: str, filename: str) -> str:
    cleaned = PurePosixPath(filename or "artifact.bin").name or "artifact.bin"
    return f"{tenant_id}/{artifact_id}/{cleaned}"


def new_artifact_id() -> str:
    return uuid4().hex


async def store_artifact(
    storage: EvidenceStorage,
    *,
    path: str,
    data: bytes,
    timeout_s: float = 5.0,
) -> StoredEvidence:
    # Hash before upload so the recorded digest reflects the bytes we were given.
    digest = sha256_hex(data)
    await with_store_timeout(
        storage.put(path, data),
        store=storage.name,
        operation="evidence.put",
        timeout_s=timeout_s,
    )
    return StoredEvidence(path=path, sha256=digest, size_bytes=len(data))


async def issue_download_grant(
    artifact: EvidenceArtifact,
    storage: EvidenceStorage,
    *,
    ttl_s: int,
    timeout_s: float = 5.0,
    now: datetime | None = None,
) -> DownloadGrant:
    """Re-hash stored bytes and sign a time-limited URL only if they match."""
    data = await with_store_timeout(
        storage.fetch(artifact.path),
        store=storage.name,
        operation="evidence.fetch",
        timeout_s=timeout_s,
    )
    actual = sha256_hex(data)
    if not hmac.compare_digest(actual.encode("ascii"), artifact.sha256.lower().encode("utf-8")):
        logger.error("evidence_hash_mismatch artifact_id=%s", artifact.id)
        raise EvidenceIntegrityError(artifact_id=artifact.id, expected=artifact.sha256, actual=actual)
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=ttl_s)
    url = storage.signed_url(artifact.path, expires_at=int(expires_at.timestamp()))
    return DownloadGrant(url=url, expires_at=expires_at)


async def discard_artifact(storage: EvidenceStorage, *, path: str, timeout_s: float = 5.0) -> None:
    # Used when the metadata row could not be written; a leftover object is only logged.
    try:
        await with_store_timeout(
            storage.delete(path),
            store=storage.name,
            operation="evidence.delete",
            timeout_s=timeout_s,
        )
    except StoreUnavailableError:
        logger.error("evidence_orphaned path=%s", path)
