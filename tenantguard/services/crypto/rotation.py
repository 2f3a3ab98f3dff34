from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol, Sequence

from sqlalchemy import Table, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from tenantguard.core.errors import (
    CiphertextIntegrityError,
    ConfigurationError,
    KeyResolutionError,
    StoreUnavailableError,
)
from tenantguard.services.crypto.column import ColumnCipher
from tenantguard.services.crypto.keyring import KeyRegistry
from tenantguard.services.resilience import with_store_timeout


logger = logging.getLogger(__name__)


@dataclass
class RotationReport:
    column: str
    target_version: str
    scanned: int = 0
    rotated: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed == 0


class EncryptedColumnSource(Protocol):
    name: str

    async def fetch_batch(self, *, after_id: Any | None, limit: int) -> Sequence[tuple[Any, str]]:
        """Return (row_id, serialized) pairs ordered by id, strictly after `after_id`."""
        ...

    async def compare_and_swap(self, row_id: Any, *, expected: str, replacement: str) -> bool:
        """Write `replacement` only if the row still holds `expected`."""
        ...

    async def count_with_version(self, version: str) -> int:
        ...


class SqlColumnSource:
    def __init__(self, session_factory: async_sessionmaker, table: Table, *, id_column: str, value_column: str) -> None:
        self._session_factory = session_factory
        self._id = table.c[id_column]
        self._value = table.c[value_column]
        self._table = table
        self.name = f"{table.name}.{value_column}"

    async def fetch_batch(self, *, after_id: Any | None, limit: int) -> Sequence[tuple[Any, str]]:
        # Keyset pagination keeps batches stable while rows are being rewritten.
        stmt = select(self._id, self._value).where(self._value.is_not(None))
        if after_id is not None:
            stmt = stmt.where(self._id > after_id)
        stmt = stmt.order_by(self._id.asc()).limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [(row[0], row[1]) for row in rows]

    async def compare_and_swap(self, row_id: Any, *, expected: str, replacement: str) -> bool:
        stmt = (
            update(self._table)
            .where(self._id == row_id, self._value == expected)
            .values({self._value.name: replacement})
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return (result.rowcount or 0) == 1

    async def count_with_version(self, version: str) -> int:
        async with self._session_factory() as session:
            # Escape LIKE wildcards so "2024_01" never matches "2024x01".
            prefix = self._value.startswith(f"v={version};", autoescape=True)
            total = await session.scalar(select(func.count()).select_from(self._table).where(prefix))
        return int(total or 0)


async def _rotate_row(
    cipher: ColumnCipher,
    source: EncryptedColumnSource,
    report: RotationReport,
    row_id: Any,
    serialized: str,
    timeout_s: float,
) -> None:
    try:
        replacement = cipher.reencrypt(serialized)
    except (CiphertextIntegrityError, KeyResolutionError) as exc:
        report.failed += 1
        report.failures.append({"row_id": row_id, "error": type(exc).__name__})
        logger.warning("rotation_row_failed column=%s row_id=%s error=%s", source.name, row_id, type(exc).__name__)
        return
    if replacement is None:
        report.skipped += 1
        return
    try:
        swapped = await with_store_timeout(
            source.compare_and_swap(row_id, expected=serialized, replacement=replacement),
            store=source.name,
            operation="rotation.compare_and_swap",
            timeout_s=timeout_s,
        )
    except StoreUnavailableError as exc:
        # Left on its old version; a re-run picks the row up again.
        report.failed += 1
        report.failures.append({"row_id": row_id, "error": type(exc).__name__})
        return
    if swapped:
        report.rotated += 1
    else:
        # A concurrent writer replaced the value; it was written under the current key.
        report.skipped += 1


async def rotate_column(
    cipher: ColumnCipher,
    source: EncryptedColumnSource,
    *,
    batch_size: int = 200,
    concurrency: int = 4,
    timeout_s: float = 5.0,
) -> RotationReport:
    """Re-encrypt every value in `source` onto the registry's current version.

    Idempotent: rows already on the current version are skipped, so the sweep
    can be re-run after interruption. A failed batch read raises
    ``StoreUnavailableError``; failed row writes land in the report.
    """
    report = RotationReport(column=source.name, target_version=cipher.registry.current_version)
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _bounded(row_id: Any, serialized: str) -> None:
        async with semaphore:
            await _rotate_row(cipher, source, report, row_id, serialized, timeout_s)

    after_id: Any | None = None
    while True:
        batch = await with_store_timeout(
            source.fetch_batch(after_id=after_id, limit=batch_size),
            store=source.name,
            operation="rotation.fetch_batch",
            timeout_s=timeout_s,
        )
        if not batch:
            break
        report.scanned += len(batch)
        await asyncio.gather(*(_bounded(row_id, serialized) for row_id, serialized in batch))
        after_id = batch[-1][0]
        logger.info(
            "rotation_progress column=%s scanned=%s rotated=%s failed=%s",
            source.name,
            report.scanned,
            report.rotated,
            report.failed,
        )
    return report


async def count_rows_on_version(
    sources: Sequence[EncryptedColumnSource],
    version: str,
    *,
    timeout_s: float = 5.0,
) -> dict[str, int]:
    counts: dict[str, int] = {}
    for source in sources:
        counts[source.name] = await with_store_timeout(
            source.count_with_version(version),
            store=source.name,
            operation="rotation.count_with_version",
            timeout_s=timeout_s,
        )
    return counts


async def retire_after_sweep(
    registry: KeyRegistry,
    sources: Sequence[EncryptedColumnSource],
    version: str,
    *,
    timeout_s: float = 5.0,
) -> None:
    # Refuse to retire while any column still holds values on `version`.
    for name, remaining in (await count_rows_on_version(sources, version, timeout_s=timeout_s)).items():
        if remaining:
            raise ConfigurationError(
                f"{remaining} values in {name} still use KEK {version}; run the sweep first"
            )
    registry.retire(version)
