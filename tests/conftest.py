from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from aiohttp.test_utils import TestClient, TestServer

from flapboard.app import create_app
from flapboard.board.config import ServerConfig
from flapboard.storage.memory import MemoryBackend
from flapboard.storage.sqlite import SqliteBackend

ADMIN = "s3cret"


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(store="memory", admin_password=ADMIN, request_timeout=2.0)


@pytest.fixture(params=["memory", "sqlite"])
def any_backend(request, tmp_path):
    if request.param == "memory":
        return MemoryBackend()
    b = SqliteBackend(str(tmp_path / "scores.sqlite3"))
    b.init()
    return b


@asynccontextmanager
async def serve(config: ServerConfig, backend):
    app = create_app(config, backend=backend)
    async with TestClient(TestServer(app)) as client:
        yield client
