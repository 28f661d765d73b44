"""Tests for configuration loading."""

from waystone.config import load_config


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
log_level: DEBUG
runner:
  max_attempts: 5
  backoff_base: 2.0
scheduler:
  tick_interval: 0.5
"""
    )
    monkeypatch.setenv("WAYSTONE_CONFIG", str(config_path))
    monkeypatch.delenv("WAYSTONE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.log_level == "DEBUG"
    assert config.runner.max_attempts == 5
    assert config.runner.backoff_base == 2.0
    assert config.runner.heartbeat_interval == 0.8
    assert config.scheduler.tick_interval == 0.5
    assert config.database_url is None


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite://from-file.db\n")
    monkeypatch.setenv("WAYSTONE_DATABASE_URL", "sqlite://from-env.db")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite://from-env.db"


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("WAYSTONE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = load_config(str(tmp_path / "nope.yaml"))
    assert config.runner.max_attempts == 3
    assert config.runner.execution_timeout == 120.0


def test_log_level_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("WAYSTONE_LOG_LEVEL", "WARNING")
    config = load_config(str(tmp_path / "nope.yaml"))
    assert config.log_level == "WARNING"
