import pytest

from pagewright import persistence
from pagewright.config import PagewrightConfig
from pagewright.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
    reset_repository,
)


@pytest.fixture(autouse=True)
def clean_factory(monkeypatch):
    monkeypatch.delenv("PAGEWRIGHT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_repository()
    yield
    reset_repository()


def test_defaults_to_in_memory():
    repo = get_repository(config=PagewrightConfig())
    assert isinstance(repo, InMemoryWorkflowRepository)
    assert get_repository() is repo


def test_sqlite_url_selects_sqlite_backend(tmp_path):
    repo = get_repository(f"sqlite://{tmp_path / 'runs.db'}")
    assert isinstance(repo, SQLiteWorkflowRepository)
    assert repo.db_path == str(tmp_path / "runs.db")
    repo.close()


def test_env_var_selects_backend(monkeypatch, tmp_path):
    monkeypatch.setenv("PAGEWRIGHT_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    repo = get_repository(config=PagewrightConfig())
    assert isinstance(repo, SQLiteWorkflowRepository)
    repo.close()


def test_async_driver_url_selects_sqlmodel_backend(tmp_path):
    repo = get_repository(f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}")
    assert isinstance(repo, persistence.SQLWorkflowRepository)


def test_postgres_url_is_upgraded_to_asyncpg():
    pytest.importorskip("asyncpg")
    repo = get_repository("postgres://user:pw@localhost/pagewright")
    assert repo.engine.url.drivername == "postgresql+asyncpg"


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError, match="Unsupported database backend"):
        get_repository("mysql://localhost/pagewright")
