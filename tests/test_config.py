"""Unit tests for activator/config.py defaults and CLI overrides."""

import pytest
from pydantic import ValidationError

from activator.config import Settings
from activator.main import load_settings, parse_args


def test_default_retry_policy_is_unbounded() -> None:
    s = Settings(_env_file=None)
    assert s.max_rate_limit_retries is None
    assert s.max_resend_attempts is None
    assert s.rate_limit_backoff_seconds >= 60
    assert s.resend_retry_seconds >= 60
    assert s.halt_on_fatal is False


def test_default_transport_is_http() -> None:
    assert Settings(_env_file=None).transport == "http"


def test_log_level_normalized() -> None:
    assert Settings(_env_file=None, verbosity="debug").log_level == "DEBUG"
    assert Settings(_env_file=None, verbosity="warn").log_level == "WARNING"
    assert Settings(_env_file=None, verbosity="INFO").log_level == "INFO"


def test_unknown_verbosity_rejected_at_load() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, verbosity="verbose")


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("IMAP_BATCH", "25")
    monkeypatch.setenv("TRANSPORT", "browser")
    monkeypatch.setenv("MAX_RESEND_ATTEMPTS", "3")
    s = Settings(_env_file=None)
    assert s.imap_batch == 25
    assert s.transport == "browser"
    assert s.max_resend_attempts == 3


def test_cli_overrides_only_given_options(monkeypatch) -> None:
    monkeypatch.setenv("IMAP_START", "100")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    args = parse_args(["--batch-size", "5", "--halt-on-fatal"])
    s = load_settings(args)
    assert s.imap_batch == 5
    assert s.halt_on_fatal is True
    assert s.imap_start == 100
    assert s.transport == "http"
