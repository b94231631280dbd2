from __future__ import annotations

import pytest

from epub2audio import config, db


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the service at a fresh data directory and database."""
    monkeypatch.setattr(config, "DATA_DIR", tmp_path / "data")
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "data" / "test.db"))
    monkeypatch.setattr(config, "RETRY_BASE_DELAY", 0.0)
    db.init_db()
    return tmp_path / "data"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
