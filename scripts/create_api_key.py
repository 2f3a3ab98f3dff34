from __future__ import annotations

import argparse
import asyncio
import sys

from tenantguard.core.config import get_settings
from tenantguard.persistence.db import build_engine, build_session_factory
from tenantguard.services.audit import AuditLogEntry, AuditLogger, SqlAuditSink
from tenantguard.services.auth.api_keys import generate_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Generate an API key for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--prefix", default="tg", help="Public key prefix")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    settings = get_settings()
    generated = generate_api_key(prefix=args.prefix)
    engine = build_engine(settings.database_url)
    try:
        audit = AuditLogger(
            SqlAuditSink(build_session_factory(engine)),
            mode="sync",
            timeout_s=settings.store_timeout_ms / 1000.0,
        )
        # Record key issuance without the secret or its hash.
        await audit.append(
            AuditLogEntry(
                tenant_id=args.tenant,
                user_id="create_api_key",
                action="auth.api_key.created",
                resource="api_key",
                resource_id=generated.prefix,
                new_value={"key_name": args.name},
            )
        )
    finally:
        await engine.dispose()

    print("API key created:")
    print(f"  tenant_id: {args.tenant}")
    print(f"  key_prefix: {generated.prefix}")
    print(f"  key_hash: {generated.key_hash}")
    print("  secret (shown once):")
    print(f"    {generated.secret}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
