"""
Tests for the WebSocket bridge and HTTP endpoints.

Uses the starlette TestClient without entering its context, so the startup
hook (which would connect the engine's event channel) does not run.

Run tests:
    pytest tests/test_bridge.py -v
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from conftest import SPEC, FakeBackend
from bridge import BridgeManager, BridgeMessage, MessageType, parse_command
from main import create_app
from tsquery.config import EngineConfig
from tsquery.engine import QueryEngine
from tsquery.events import EventRouter


@pytest.fixture
def engine():
    return QueryEngine(
        EngineConfig(server_url="http://test/"),
        client=FakeBackend(),
        router=EventRouter("ws://test/api/events"),
    )


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


# ============================================================================
# Command Parsing Tests
# ============================================================================


class TestParseCommand:
    """Validation of client frames."""

    def test_query_command(self):
        command = parse_command('{"cmd": "query", "key": "chart", "query": {"a": {"timeseries": "x"}}}')
        assert command.key == "chart"
        assert command.query == {"a": {"timeseries": "x"}}

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            '{"cmd": "query", "key": "chart"}',
            '{"cmd": "query", "key": "", "query": {}}',
            '{"cmd": "subscribe"}',
            '{"key": "chart"}',
        ],
    )
    def test_invalid_frames(self, frame):
        with pytest.raises(ValueError):
            parse_command(frame)

    def test_message_serializes_numpy_values(self):
        import numpy as np

        message = BridgeMessage(type=MessageType.QUERY_OUTPUT, key="k", data={"mean": np.float64(1.5)})
        assert '"mean": 1.5' in message.to_json()


# ============================================================================
# HTTP Endpoint Tests
# ============================================================================


class TestHttpEndpoints:
    """Health and stats endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["connected"] is False
        assert data["events_status"] is None
        assert data["queries"] == 0

    def test_ws_stats(self, client):
        data = client.get("/api/ws/stats").json()
        assert data == {"total_connections": 0, "open_queries": 0}


# ============================================================================
# WebSocket Bridge Tests
# ============================================================================


class TestWebSocketBridge:
    """Query lifecycle over the bridge."""

    def test_connected_message(self, client):
        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()
            assert message["type"] == "connected"
            assert message["data"]["events_connected"] is False
            assert message["data"]["client_id"]

    def test_query_streams_status_then_output(self, client, engine):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "query", "key": "chart", "query": SPEC})

            first = ws.receive_json()
            second = ws.receive_json()
            third = ws.receive_json()

            assert first["type"] == "query_status"
            assert first["key"] == "chart"
            assert first["data"]["status"] == "Querying Data..."
            assert second["data"]["status"] == "Processing Data..."
            assert third["type"] == "query_output"
            assert third["key"] == "chart"
            assert third["data"]["keys"] == ["temperature"]
            rows = third["data"]["output"]["datatable"]["tables"][0]["rows"]
            assert [row["d"] for row in rows] == [2, 4, None]

            ws.send_json({"cmd": "close", "key": "chart"})
            closed = ws.receive_json()
            assert closed["type"] == "query_closed"
            assert closed["key"] == "chart"
            assert len(engine.queries.cached) == 1

    def test_close_unknown_key(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "close", "key": "missing"})
            message = ws.receive_json()
            assert message["type"] == "error"
            assert message["key"] == "missing"

    def test_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "ping"})
            assert ws.receive_json()["type"] == "pong"

    def test_invalid_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("garbage")
            message = ws.receive_json()
            assert message["type"] == "error"
            assert "Invalid message format" in message["data"]["error"]

    def test_client_id_from_query_string(self, client, engine):
        with client.websocket_connect("/ws?client_id=ui") as ws:
            assert ws.receive_json()["data"]["client_id"] == "ui"
            ws.send_json({"cmd": "query", "key": "chart", "query": SPEC})
            for _ in range(3):
                ws.receive_json()
            assert engine.queries.get("ui:chart") is not None


# ============================================================================
# Bridge Manager Tests
# ============================================================================


class FakeWebSocket:
    """Server-side WebSocket double recording sent frames."""

    def __init__(self):
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        self.sent.append(json.loads(text))


class TestBridgeManager:
    """Connection bookkeeping without a transport."""

    @pytest.mark.asyncio
    async def test_disconnect_closes_queries(self, engine):
        bridge = BridgeManager(engine)
        ws = FakeWebSocket()
        await bridge.connect(ws, "ui")

        await bridge.handle_message(ws, json.dumps({"cmd": "query", "key": "chart", "query": SPEC}))
        query = engine.queries.get("ui:chart")
        await query.settled()
        await bridge.flush(ws)

        assert ws.accepted
        assert [m["type"] for m in ws.sent] == ["connected", "query_status", "query_status", "query_output"]
        assert bridge.get_query_count() == 1

        await bridge.disconnect(ws)

        assert bridge.get_connection_count() == 0
        assert engine.queries.get("ui:chart") is None
        assert engine.queries.cached == [query]

    @pytest.mark.asyncio
    async def test_clients_share_keys_without_interfering(self, engine):
        bridge = BridgeManager(engine)
        a, b = FakeWebSocket(), FakeWebSocket()
        await bridge.connect(a, "a")
        await bridge.connect(b, "b")

        frame = json.dumps({"cmd": "query", "key": "chart", "query": SPEC})
        await bridge.handle_message(a, frame)
        await bridge.handle_message(b, frame)
        await engine.queries.get("a:chart").settled()
        await engine.queries.get("b:chart").settled()

        response = await bridge.handle_message(a, json.dumps({"cmd": "close", "key": "chart"}))

        assert response.type == MessageType.QUERY_CLOSED
        assert engine.queries.get("a:chart") is None
        assert engine.queries.get("b:chart") is not None

    @pytest.mark.asyncio
    async def test_pushes_arrive_in_order_with_slow_sends(self, engine):
        class SlowWebSocket(FakeWebSocket):
            async def send_text(self, text):
                # Later frames finish sooner if sends ever overlap
                await asyncio.sleep(0.001 * (len(self.sent) % 3))
                await super().send_text(text)

        bridge = BridgeManager(engine)
        ws = SlowWebSocket()
        await bridge.connect(ws, "ui")

        for i in range(50):
            bridge._push(ws, BridgeMessage(type=MessageType.QUERY_STATUS, key="chart", data={"status": str(i)}))
        await bridge.flush(ws)

        statuses = [m["data"]["status"] for m in ws.sent if m["type"] == "query_status"]
        assert statuses == [str(i) for i in range(50)]

    @pytest.mark.asyncio
    async def test_failed_send_disconnects_and_drops_backlog(self, engine):
        class BrokenWebSocket(FakeWebSocket):
            async def send_text(self, text):
                if self.sent:
                    raise RuntimeError("socket closed")
                await super().send_text(text)

        bridge = BridgeManager(engine)
        ws = BrokenWebSocket()
        await bridge.connect(ws, "ui")

        for i in range(5):
            bridge._push(ws, BridgeMessage(type=MessageType.QUERY_STATUS, key="chart", data={"status": str(i)}))
        await asyncio.wait_for(bridge.flush(ws), timeout=1)
        for _ in range(3):
            await asyncio.sleep(0)

        assert [m["type"] for m in ws.sent] == ["connected"]
        assert bridge.get_connection_count() == 0
