from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any quartermaster module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="quartermaster-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/test.sqlite")
os.environ.setdefault("JWT_SECRET", "test-secret-0123456789abcdef0123456789abcdef")

import pytest  # noqa: E402

from quartermaster.core.config import get_settings  # noqa: E402
from quartermaster.domain.models import Base  # noqa: E402
from quartermaster.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Every test starts from empty tables; dispose so no connection outlives its event loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests that monkeypatch env vars must not leak cached settings into the next test.
    yield
    get_settings.cache_clear()
