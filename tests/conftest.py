import pytest


@pytest.fixture
def db_url(tmp_path):
    """A fresh SQLite file per test (aiosqlite driver)."""
    return f"sqlite+aiosqlite:///{tmp_path / 'docflow-test.db'}"
