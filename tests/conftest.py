from pathlib import Path

import pytest

from src.config import settings
from src.db import session as session_module
from src.db.models import Base


@pytest.fixture
def session_factory(tmp_path: Path, monkeypatch):
    engine = session_module.make_engine(f"sqlite+pysqlite:///{(tmp_path / 'app.db').as_posix()}")
    Base.metadata.create_all(engine)
    factory = session_module.make_session_factory(engine)
    monkeypatch.setattr(session_module, "SessionLocal", factory)
    monkeypatch.setattr(settings, "timezone", "UTC")
    yield factory
    engine.dispose()
