"""Shared fixtures: every test gets its own database under ``tmp_path``."""

from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio

from edm_popularity.db import close_db, get_session_factory, init_db


@pytest_asyncio.fixture
async def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AsyncIterator[Path]:
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    await close_db()
    await init_db()
    try:
        yield tmp_path
    finally:
        await close_db()


@pytest.fixture
def session_factory(data_dir: Path):
    return get_session_factory()


def static_adapter(payload: Any):
    """An adapter that always returns ``payload``."""

    async def adapter():
        return payload

    return adapter


def failing_adapter(exc: Exception):
    async def adapter():
        raise exc

    return adapter
