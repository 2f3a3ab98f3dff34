from __future__ import annotations

import argparse
import asyncio
import sys

from tenantguard.core.config import get_settings
from tenantguard.core.logging import configure_logging
from tenantguard.domain.models import ENCRYPTED_COLUMNS, Base
from tenantguard.persistence.db import build_engine, build_session_factory
from tenantguard.services.crypto import (
    ColumnCipher,
    KeyRegistry,
    SqlColumnSource,
    count_rows_on_version,
    retire_after_sweep,
    rotate_column,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-encrypt column values onto the current KEK version")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per keyset batch")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent re-encryptions per batch")
    parser.add_argument(
        "--retire",
        default=None,
        help="KEK version to retire once no rows reference it",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report how many values sit on each non-current version",
    )
    return parser


async def _rotate(args: argparse.Namespace) -> int:
    settings = get_settings()
    registry = KeyRegistry.from_env(settings.data_kek_version, retired=settings.retired_kek_versions())
    cipher = ColumnCipher(registry)
    timeout_s = settings.crypto_sweep_timeout_ms / 1000.0
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    sources = [
        SqlColumnSource(session_factory, Base.metadata.tables[table], id_column=id_column, value_column=value_column)
        for table, id_column, value_column in ENCRYPTED_COLUMNS
    ]
    exit_code = 0
    try:
        if args.dry_run:
            for version in registry.versions():
                if version == registry.current_version:
                    continue
                for name, remaining in (await count_rows_on_version(sources, version, timeout_s=timeout_s)).items():
                    print(f"{name}: {remaining} values on {version}")
            return 0

        for source in sources:
            report = await rotate_column(
                cipher,
                source,
                batch_size=args.batch_size or settings.crypto_reencrypt_batch_size,
                concurrency=args.concurrency or settings.crypto_max_concurrent_reencrypt,
                timeout_s=timeout_s,
            )
            print(f"Rotation of {report.column} to {report.target_version}:")
            print(f"  scanned: {report.scanned}")
            print(f"  rotated: {report.rotated}")
            print(f"  skipped: {report.skipped}")
            print(f"  failed: {report.failed}")
            for failure in report.failures:
                print(f"    row {failure['row_id']}: {failure['error']}")
            if not report.complete:
                exit_code = 1

        if args.retire:
            if exit_code:
                print("Sweep incomplete; not retiring", file=sys.stderr)
                return exit_code
            await retire_after_sweep(registry, sources, args.retire, timeout_s=timeout_s)
            # Retirement is persisted by operators through DATA_KEK_RETIRED.
            retired = sorted(set(settings.retired_kek_versions()) | {args.retire})
            print(f"KEK {args.retire} has no remaining values. Set DATA_KEK_RETIRED={','.join(retired)}")
        return exit_code
    finally:
        await engine.dispose()


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_rotate(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_data_keys failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
