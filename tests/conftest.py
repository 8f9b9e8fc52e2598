import os
from pathlib import Path

import pytest

from sage.config import get_settings
from sage.db.migrations.runner import run_migrations


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path):
    db = tmp_path / "test.db"
    os.environ["APP_DB"] = str(db)
    os.environ["APP_ENV"] = "dev"
    os.environ["SEARXNG_BASE_URL"] = "http://localhost:8080"
    get_settings.cache_clear()
    run_migrations()
    yield
    get_settings.cache_clear()
