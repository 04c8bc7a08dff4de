# foundpoems/conftest.py
import os
import pytest

# Keep the app lifespan from starting the sweeper/spawner loops during tests
os.environ.setdefault("BACKGROUND_TASKS_ENABLED", "false")

from foundpoems.tests.mocks import ADMIN_EMAIL, ADMIN_SECRET, make_admin_token


@pytest.fixture(scope="function", autouse=True)
def test_db(tmp_path):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not :memory:) so worker threads used by asyncio.to_thread see
    the same data.
    """
    from foundpoems.core.database import create_all_tables, get_engine, init_engine

    init_engine(f"sqlite:///{tmp_path / 'test.db'}")
    create_all_tables()
    yield
    get_engine().dispose()


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings: JWT admin auth, no email delivery, no background tasks."""
    from foundpoems.core.config import settings

    monkeypatch.setattr(settings, "BACKGROUND_TASKS_ENABLED", False)
    monkeypatch.setattr(settings, "ADMIN_JWT_SECRET", ADMIN_SECRET)
    monkeypatch.setattr(settings, "ADMIN_EMAILS", ADMIN_EMAIL)
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    monkeypatch.setattr(settings, "ADMIN_AUTH_MODE", "jwt")
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")
    monkeypatch.setattr(settings, "RESEND_API_KEY", None)
    monkeypatch.setattr(settings, "INVITE_EMAIL_FROM", None)
    monkeypatch.setattr(settings, "INVITE_QUEUE_ENABLED", False)
    monkeypatch.setattr(settings, "FEED_FIRST_POLL_MODE", "latest")
    monkeypatch.setattr(settings, "STREAM_TIMEZONE", "UTC")
    return settings


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    from foundpoems.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_admin_token()}"}


@pytest.fixture
def client():
    """TestClient with the app lifespan running (one event loop for every socket)."""
    from fastapi.testclient import TestClient

    from foundpoems.main import app

    with TestClient(app) as c:
        yield c
