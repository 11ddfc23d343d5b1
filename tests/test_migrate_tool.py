import asyncio
import importlib.util
from pathlib import Path

import pytest

from flapboard.board.records import BLOCK_INDEX_KEY, LEGACY_BLOCK_KEY
from flapboard.storage.sqlite import SqliteBackend

TOOL = Path(__file__).resolve().parents[1] / "tools" / "migrate_blocklist.py"


def _load_tool():
    spec = importlib.util.spec_from_file_location("migrate_blocklist", TOOL)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


async def _seed(path: str) -> None:
    backend = SqliteBackend(path)
    backend.init()
    store = await backend.connect()
    try:
        await store.sadd(LEGACY_BLOCK_KEY, "7.7.7.7", "6.6.6.6")
    finally:
        await store.close()


async def _members(path: str, key: str) -> set[str]:
    store = await SqliteBackend(path).connect()
    try:
        return await store.smembers(key)
    finally:
        await store.close()


def test_migrates_sqlite_store(tmp_path, monkeypatch, capsys):
    for var in ("REDIS_URL", "FLAP_STORE", "FLAP_SQLITE_PATH"):
        monkeypatch.delenv(var, raising=False)
    path = str(tmp_path / "scores.sqlite3")
    asyncio.run(_seed(path))

    tool = _load_tool()
    assert tool.main(["--store", "sqlite", "--sqlite-path", path]) == 0
    assert "Migrated 2 legacy blocklist entries" in capsys.readouterr().out

    assert asyncio.run(_members(path, BLOCK_INDEX_KEY)) == {"7.7.7.7", "6.6.6.6"}
    assert asyncio.run(_members(path, LEGACY_BLOCK_KEY)) == set()


def test_rejects_unknown_store():
    with pytest.raises(SystemExit):
        _load_tool().main(["--store", "mongo"])
