import pytest
from pydantic import ValidationError

from pagewright.config import PagewrightConfig, load_config

CONFIG = """
dispatcher:
  max_concurrent_tasks: 3
  max_retries: 4
health:
  stale_after_seconds: 120
rate_limiter:
  requests_per_second: 2
  burst: 3
images:
  max_attempts: 4
  storage_dir: /var/pagewright/images
stages:
  conductor_model: "test"
  enhance_intake: false
"""


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PAGEWRIGHT_CONFIG", raising=False)
    monkeypatch.delenv("PAGEWRIGHT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def test_defaults_without_config_file():
    config = load_config()
    assert config == PagewrightConfig()
    assert config.database_url is None
    assert config.dispatcher.max_retries == 2
    assert config.images.max_attempts == 3


def test_yaml_sections_are_loaded(monkeypatch, tmp_path):
    path = tmp_path / "pagewright.yaml"
    path.write_text(CONFIG)
    monkeypatch.setenv("PAGEWRIGHT_CONFIG", str(path))

    config = load_config()
    assert config.dispatcher.max_concurrent_tasks == 3
    assert config.dispatcher.max_retries == 4
    assert config.health.stale_after_seconds == 120
    assert config.health.stale_critical_count == 2
    assert config.rate_limiter.requests_per_second == 2
    assert config.rate_limiter.burst == 3
    assert config.images.storage_dir == "/var/pagewright/images"
    assert config.stages.conductor_model == "test"
    assert config.stages.enhance_intake is False


def test_config_yaml_in_working_directory(tmp_path):
    (tmp_path / "config.yaml").write_text("database_url: sqlite://runs.db\n")
    assert load_config().database_url == "sqlite://runs.db"


def test_environment_overrides_database_url(monkeypatch, tmp_path):
    (tmp_path / "config.yaml").write_text("database_url: sqlite://runs.db\n")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/pagewright")
    assert load_config().database_url == "postgresql://db/pagewright"


def test_invalid_values_are_rejected(tmp_path):
    (tmp_path / "config.yaml").write_text("images:\n  max_attempts: 1\n")
    with pytest.raises(ValidationError):
        load_config()
