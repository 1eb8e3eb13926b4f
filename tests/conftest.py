"""
Root conftest.py for tsquery tests.

Shared fakes for the engine's collaborators: an in-memory dataset backend
standing in for the HTTP request primitive, and an in-memory connection
standing in for the event channel.
"""

import asyncio
import copy
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure the project root is in the path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from tsquery.client import ApiResponse, ApiResult


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "websocket: mark test as involving WebSocket communication",
    )


def pytest_collection_modifyitems(config, items):
    """Mark tests with 'websocket' or 'bridge' in their name."""
    for item in items:
        name = item.name.lower()
        if "websocket" in name or "bridge" in name:
            item.add_marker(pytest.mark.websocket)


# ============================================================================
# Fakes
# ============================================================================


SPEC = {"temperature": {"timeseries": "ts1"}}

DATA = {
    "temperature": [
        {"t": 1, "d": 2},
        {"t": 2, "d": 4},
        {"t": 3, "d": None},
    ],
}


class FakeBackend:
    """Dataset endpoint double implementing ``request(method, path, body)``.

    Set ``gate`` to an ``asyncio.Event`` to hold requests until it is set.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data = copy.deepcopy(DATA if data is None else data)
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail: Optional[Exception] = None
        self.error: Optional[str] = None
        self.closed = False

    async def request(self, method: str, path: str, body: Any = None) -> ApiResult:
        self.calls.append((method, path, copy.deepcopy(body)))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        if self.error is not None:
            return ApiResult(ApiResponse(ok=False, status=400), {"error_description": self.error})
        return ApiResult(ApiResponse(ok=True, status=200), copy.deepcopy(self.data))

    async def close(self) -> None:
        self.closed = True


class FakeConnection:
    """In-memory event channel connection yielding canned frames."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent: List[Dict[str, Any]] = []

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


def event_frame(event: str, **fields) -> str:
    return json.dumps({"event": event, **fields})


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def spec():
    return copy.deepcopy(SPEC)
