"""Tests for configuration loading."""

from ticketflow.config import load_config
from ticketflow.notifications import InMemoryDispatcher, get_dispatcher
from ticketflow.notifications.resend import ResendDispatcher


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
database_url: sqlite:///tmp/tickets.db
notifications:
  backend: resend
  sender: Helpdesk <help@example.com>
  timeout: 3
"""
    )
    monkeypatch.setenv("TICKETFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("TICKETFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("RESEND_API_KEY", "re_test")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/tickets.db"
    assert config.notifications.backend == "resend"
    assert config.notifications.sender == "Helpdesk <help@example.com>"
    assert config.notifications.timeout == 3
    assert config.notifications.api_key == "re_test"


def test_env_database_url_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("TICKETFLOW_CONFIG", str(config_path))
    monkeypatch.setenv("TICKETFLOW_DATABASE_URL", "sqlite:///from-env.db")

    assert load_config().database_url == "sqlite:///from-env.db"


def test_missing_config_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("TICKETFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("TICKETFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("RESEND_API_KEY", raising=False)

    config = load_config()
    assert config.database_url is None
    assert config.notifications.backend == "none"
    assert get_dispatcher(config=config) is None


def test_get_dispatcher_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
notifications:
  backend: resend
  api_key: re_from_file
"""
    )
    monkeypatch.setenv("TICKETFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("RESEND_API_KEY", raising=False)

    dispatcher = get_dispatcher()
    assert isinstance(dispatcher, ResendDispatcher)
    assert isinstance(get_dispatcher("inmemory"), InMemoryDispatcher)
