from __future__ import annotations

import pytest

from tenantguard.core.config import get_settings
from tenantguard.domain.models import Base
from tenantguard.persistence.db import build_engine, build_session_factory


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings cache between tests to avoid leaking env overrides.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions share one database.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tenantguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()
