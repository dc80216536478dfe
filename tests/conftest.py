from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from tickq.core.config import Settings, get_settings
from tickq.db.init_db import initialize_database
from tickq.db.session import get_session_factory, reset_engine


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Isolated SQLite state root; yields ``(settings, session_factory)``."""

    def _setup(**overrides: str) -> tuple[Settings, sessionmaker[Session]]:
        state_root = tmp_path / "state"
        state_root.mkdir(parents=True, exist_ok=True)
        monkeypatch.setenv("TICKQ_STATE_ROOT", state_root.as_posix())
        monkeypatch.setenv("TICKQ_ENVIRONMENT", "development")
        monkeypatch.setenv("TICKQ_JSON_LOGS", "false")
        for key, value in overrides.items():
            monkeypatch.setenv(f"TICKQ_{key.upper()}", value)

        get_settings.cache_clear()
        reset_engine()
        initialize_database()
        return get_settings(), get_session_factory()

    yield _setup

    reset_engine()
    get_settings.cache_clear()
