"""Shared fixtures for the check-in hub test suite."""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketState

# Ensure the project root is on sys.path so 'checkin_hub' resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from checkin_hub.checkins import CheckInService  # noqa: E402
from checkin_hub.connection_registry import ConnectionRegistry  # noqa: E402
from checkin_hub.dispatcher import EventDispatcher  # noqa: E402
from checkin_hub.progress_store import ProgressStore  # noqa: E402
from checkin_hub.review_scheduler import (  # noqa: E402
    DelegatedReviewPolicy,
    ReviewScheduler,
    SimulatedReviewPolicy,
)


# ---------------------------------------------------------------------------
# WebSocket doubles
# ---------------------------------------------------------------------------

def make_mock_websocket(*, open_: bool = True):
    """A stand-in for a starlette WebSocket that records what is sent to it."""
    ws = MagicMock()
    state = WebSocketState.CONNECTED if open_ else WebSocketState.DISCONNECTED
    ws.client_state = state
    ws.application_state = state
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    ws.receive_text = AsyncMock()
    return ws


def script_messages(ws, *messages):
    """Feed *messages* to ws.receive_text(), then simulate a disconnect.

    dicts are JSON-encoded; strings are passed through untouched.
    """
    from fastapi import WebSocketDisconnect

    frames = [json.dumps(m) if isinstance(m, dict) else m for m in messages]
    ws.receive_text.side_effect = [*frames, WebSocketDisconnect(code=1000)]


def sent_messages(ws, msg_type: str | None = None) -> list[dict]:
    """Every dict passed to ws.send_json(), optionally filtered by ``type``."""
    sent = [c.args[0] for c in ws.send_json.call_args_list if isinstance(c.args[0], dict)]
    if msg_type is None:
        return sent
    return [m for m in sent if m.get("type") == msg_type]


class GatedSleep:
    """Injected in place of asyncio.sleep: records the delay and waits for release()."""

    def __init__(self):
        self.delays: list[float] = []
        self._gate = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._gate.wait()

    def release(self) -> None:
        self._gate.set()


async def instant_sleep(delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------

@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def store(tmp_path):
    return ProgressStore(tmp_path / "progress.json")


@pytest.fixture
def dispatcher(registry):
    return EventDispatcher(registry)


@pytest.fixture
def scheduler(store, dispatcher):
    """Simulated-review scheduler whose delay elapses immediately."""
    return ReviewScheduler(store, dispatcher, SimulatedReviewPolicy(5.0, sleep=instant_sleep))


@pytest.fixture
def service(store, scheduler):
    return CheckInService(store, scheduler)


@pytest.fixture
def token_for():
    from checkin_hub.auth import issue_token
    return issue_token


@pytest.fixture(autouse=True)
def _clean_rate_limits():
    from checkin_hub.auth import _login_attempts
    _login_attempts.clear()
    yield
    _login_attempts.clear()


# ---------------------------------------------------------------------------
# FastAPI app with fresh components
# ---------------------------------------------------------------------------

@pytest.fixture
def app(tmp_path):
    """The FastAPI app with its module-level components swapped for fresh ones.

    Reviews run in simulation mode with no delay, and the store writes under
    tmp_path, so tests are isolated and fast.
    """
    app_registry = ConnectionRegistry()
    app_store = ProgressStore(tmp_path / "app_progress.json")
    app_dispatcher = EventDispatcher(app_registry)
    app_scheduler = ReviewScheduler(app_store, app_dispatcher, SimulatedReviewPolicy(0.0))
    app_service = CheckInService(app_store, app_scheduler)

    with patch("checkin_hub.server.registry", app_registry), \
         patch("checkin_hub.server.store", app_store), \
         patch("checkin_hub.server.dispatcher", app_dispatcher), \
         patch("checkin_hub.server.review_scheduler", app_scheduler), \
         patch("checkin_hub.server.checkin_service", app_service), \
         patch("checkin_hub.server.WEBHOOK_SECRET", None):
        from checkin_hub.server import app as fastapi_app
        yield fastapi_app


@pytest.fixture
def delegated_app(app):
    """Same as ``app`` but reviews are delegated to an unreachable service."""
    import checkin_hub.server as server

    server.review_scheduler.policy = DelegatedReviewPolicy(None)
    yield app


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
