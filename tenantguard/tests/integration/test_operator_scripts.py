from __future__ import annotations

import argparse

import pytest
from sqlalchemy import select

from scripts import generate_data_kek as generate_data_kek_script
from scripts import rotate_data_keys as rotate_data_keys_script
from tenantguard.core.config import get_settings
from tenantguard.domain.models import TenantSecret
from tenantguard.services.crypto import ColumnCipher, KeyRegistry
from tenantguard.tests.utils.components import KEK_V1, KEK_V2, kek_env


def test_generate_data_kek_prints_loadable_key(monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.argv", ["generate_data_kek.py", "--version", "v7"])
    assert generate_data_kek_script.main() == 0
    line = capsys.readouterr().out.splitlines()[0]
    name, value = line.split("=", 1)
    assert name == "DATA_KEK_v7"
    registry = KeyRegistry.from_env("v7", environ={name: value})
    assert len(registry.resolve("v7")) == 32


def test_generate_data_kek_rejects_bad_version(monkeypatch) -> None:
    monkeypatch.setattr("sys.argv", ["generate_data_kek.py", "--version", "v=1"])
    assert generate_data_kek_script.main() == 1


@pytest.mark.asyncio
async def test_rotate_data_keys_sweeps_and_retires(monkeypatch, capsys, tmp_path, session_factory) -> None:
    old_cipher = ColumnCipher(KeyRegistry({"v1": KEK_V1}, "v1"))
    async with session_factory() as session:
        session.add(TenantSecret(tenant_id="acme", name="crm-token", value_enc=old_cipher.encrypt("tok_123")))
        await session.commit()

    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'tenantguard.db'}")
    monkeypatch.setenv("DATA_KEK_VERSION", "v2")
    for name, value in kek_env(v1=KEK_V1, v2=KEK_V2).items():
        monkeypatch.setenv(name, value)
    get_settings.cache_clear()

    args = argparse.Namespace(batch_size=None, concurrency=None, retire="v1", dry_run=False)
    assert await rotate_data_keys_script._rotate(args) == 0
    output = capsys.readouterr().out
    assert "rotated: 1" in output
    assert "DATA_KEK_RETIRED=v1" in output

    async with session_factory() as session:
        row = (await session.execute(select(TenantSecret))).scalar_one()
    cipher = ColumnCipher(KeyRegistry({"v1": KEK_V1, "v2": KEK_V2}, "v2"))
    assert cipher.version_of(row.value_enc) == "v2"
    assert cipher.decrypt(row.value_enc) == "tok_123"
