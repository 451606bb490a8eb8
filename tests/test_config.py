from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from pgfork.core.config import Settings, get_settings


def test_defaults_come_from_environment(isolated_settings: Path) -> None:
    settings = get_settings()
    assert settings.state_dir == isolated_settings.resolve()
    assert settings.state_dir.is_dir()
    assert settings.effective_state_database_url.endswith("/state/pgfork.sqlite3")
    assert settings.log_level == "INFO"
    assert settings.log_format == "text"


def test_log_level_aliases_are_normalized() -> None:
    assert Settings(log_level="warn").log_level == "WARNING"
    assert Settings(log_level=" Debug ").log_level == "DEBUG"


def test_unknown_log_level_is_rejected() -> None:
    with pytest.raises(ValidationError, match="log_level"):
        Settings(log_level="verbose")


def test_unknown_log_format_is_rejected() -> None:
    with pytest.raises(ValidationError, match="log_format"):
        Settings(log_format="xml")


@pytest.mark.parametrize("value", ["relative/state", "~/state", "/tmp/$USER/state"])
def test_state_dir_must_be_a_plain_absolute_path(value: str) -> None:
    with pytest.raises(ValidationError):
        Settings(state_dir=value)


def test_explicit_state_database_url_wins(tmp_path: Path) -> None:
    settings = Settings(state_database_url=f"sqlite:///{(tmp_path / 'other.sqlite3').as_posix()}")
    assert settings.effective_state_database_url.endswith("other.sqlite3")


def test_retry_delays_are_cross_checked() -> None:
    with pytest.raises(ValidationError, match="retry_max_delay_seconds"):
        Settings(retry_initial_delay_seconds=10.0, retry_max_delay_seconds=1.0)


def test_connection_overrides_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PGFORK_SOURCE_URI", "postgresql://app@db.internal/app")
    monkeypatch.setenv("PGFORK_DEST_PORT", "6543")
    settings = Settings()
    assert settings.source_uri == "postgresql://app@db.internal/app"
    assert settings.dest_port == 6543
