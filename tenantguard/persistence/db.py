from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from tenantguard.core.config import get_settings


def build_engine(database_url: str | None = None) -> AsyncEngine:
    # Configure bounded pools for Postgres; SQLite (tests) ignores pool sizing.
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 5
        engine_kwargs["pool_timeout"] = max(1, settings.store_timeout_ms // 1000)
        engine_kwargs["pool_recycle"] = 1800
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.store_timeout_ms))}
        }
    return create_async_engine(url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


def dialect_name(session_factory: async_sessionmaker) -> str:
    # Stores pick the matching INSERT ... ON CONFLICT construct per dialect.
    bind = session_factory.kw.get("bind")
    if bind is None:
        return "postgresql"
    return bind.dialect.name
