import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("POS_SEED_ITEMS", "0")
os.environ.setdefault("POS_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("EVENTS_ENABLED", "false")
os.environ.setdefault("POS_PRINT_WORKER", "false")


@pytest.fixture()
def pos_engine():
    """
    Isolated in-memory SQLite engine with the POS schema and default shops.
    StaticPool keeps one connection so every session sees the same data.
    """
    from apps.pos.app import models

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.on_startup(engine, seed_items=False)
    return engine


@pytest.fixture()
def client(pos_engine, monkeypatch):
    """
    TestClient bound to ``pos_engine``; the lifespan (startup, relay and
    delivery worker) runs inside the ``with`` block.
    """
    from apps.pos.app import models
    from apps.pos.app.main import app

    monkeypatch.setattr(models, "engine", pos_engine)
    with TestClient(app) as c:
        yield c
