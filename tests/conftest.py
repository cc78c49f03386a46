import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from fastapi.testclient import TestClient  # noqa: E402

from remote_vibe.api.main import create_app  # noqa: E402
from remote_vibe.core.config import Settings  # noqa: E402
from remote_vibe.infrastructure.session_store import InMemorySessionStore  # noqa: E402
from remote_vibe.services.command_executor import CommandExecutor  # noqa: E402
from remote_vibe.services.notification_bridge import NotificationBridge  # noqa: E402

from utils import ScriptedModelClient  # noqa: E402


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    """Keep the Redis mirror disabled unless a test opts in."""
    monkeypatch.delenv("REDIS_URL", raising=False)


@pytest.fixture
def model():
    return ScriptedModelClient()


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def bridge():
    return NotificationBridge(queue_size=100, sink=None)


@pytest.fixture
def executor(store, bridge, model):
    return CommandExecutor(store=store, bridge=bridge, model_client=model, model_timeout=2.0)


@pytest.fixture
def settings():
    return Settings(public_mode=True, model_timeout_seconds=2.0)


@pytest.fixture
def app(settings, model):
    return create_app(settings=settings, model_client=model)


@pytest.fixture
def client(app):
    # Entering the context keeps the portal loop alive so background commands run
    with TestClient(app) as c:
        yield c
