"""
WebSocket bridge between UI clients and the query engine.

Each UI connection opens queries under its own keys and receives their
output and status as pushed messages. Query keys are namespaced per
connection in the engine's query cache, so two clients may use the same
key without interfering, while equal specs still share cached output.

Client -> server (JSON):
    {"cmd": "query", "key": "chart-1", "query": {...}}
    {"cmd": "close", "key": "chart-1"}
    {"cmd": "ping"}

Server -> client (JSON):
    {"type": "query_output", "key": ..., "data": {"keys": [...], "output": {...}}}
    {"type": "query_status", "key": ..., "data": {"status": "..."}}
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional, Set, Union

from fastapi import WebSocket
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from tsquery.context import QueryContext
from tsquery.engine import QueryEngine
from tsquery.shared.logger import get_logger

logger = get_logger(__name__)


class MessageType(str, Enum):
    """Types of bridge messages sent to clients."""

    QUERY_OUTPUT = "query_output"
    QUERY_STATUS = "query_status"
    QUERY_CLOSED = "query_closed"

    # System messages
    CONNECTED = "connected"
    PONG = "pong"
    ERROR = "error"


@dataclass
class BridgeMessage:
    """A message pushed to a bridge client."""

    type: MessageType
    key: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type.value,
                "key": self.key,
                "data": self.data,
                "timestamp": self.timestamp,
            },
            default=_json_default,
        )


def _json_default(value: Any) -> Any:
    # numpy scalars and sets show up in analyzer output
    if hasattr(value, "item"):
        return value.item()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


class QueryCommand(BaseModel):
    cmd: Literal["query"]
    key: str = Field(min_length=1)
    query: Dict[str, Any]


class CloseCommand(BaseModel):
    cmd: Literal["close"]
    key: str = Field(min_length=1)


class PingCommand(BaseModel):
    cmd: Literal["ping"]


Command = Union[QueryCommand, CloseCommand, PingCommand]
_command_adapter = TypeAdapter(Command)


def parse_command(message_text: str) -> Command:
    """Validate one client frame.

    Raises:
        ValueError: if the frame is not a valid command.
    """
    try:
        data = json.loads(message_text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid message format: {e}") from e
    try:
        return _command_adapter.validate_python(data)
    except ValidationError as e:
        raise ValueError(f"Invalid command: {e.errors()[0].get('msg', e)}") from e


class BridgeManager:
    """
    Manages UI WebSocket connections and the queries they hold open.
    """

    def __init__(self, engine: QueryEngine):
        self.engine = engine
        self._connections: Set[WebSocket] = set()
        # Connection -> its client id and open query keys
        self._connection_info: Dict[WebSocket, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _engine_key(self, websocket: WebSocket, key: str) -> str:
        return f"{self._connection_info[websocket]['client_id']}:{key}"

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None) -> None:
        """Accept a new client connection."""
        await websocket.accept()
        client_id = client_id or uuid.uuid4().hex[:8]

        # Pushed messages go through one sender per connection, in push order
        outbox: asyncio.Queue = asyncio.Queue()

        async with self._lock:
            self._connections.add(websocket)
            self._connection_info[websocket] = {
                "client_id": client_id,
                "connected_at": datetime.now().isoformat(),
                "queries": set(),
                "outbox": outbox,
                "sender": asyncio.create_task(self._sender(websocket, outbox)),
            }

        await self.send_to_connection(
            websocket,
            BridgeMessage(
                type=MessageType.CONNECTED,
                data={"client_id": client_id, "events_connected": self.engine.connected},
            ),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection and close every query it held open."""
        async with self._lock:
            info = self._connection_info.pop(websocket, None)
            self._connections.discard(websocket)
        if info is None:
            return
        for key in info["queries"]:
            self.engine.close(f"{info['client_id']}:{key}")

        sender = info["sender"]
        if sender is not asyncio.current_task():
            sender.cancel()
        outbox = info["outbox"]
        while not outbox.empty():
            outbox.get_nowait()
            outbox.task_done()

    def open_query(self, websocket: WebSocket, key: str, spec: Dict[str, Any]) -> None:
        info = self._connection_info[websocket]
        info["queries"].add(key)

        def on_output(qdata: QueryContext, output: Dict[str, Any]) -> None:
            self._push(
                websocket,
                BridgeMessage(
                    type=MessageType.QUERY_OUTPUT,
                    key=key,
                    data={"keys": list(qdata.keys), "output": output},
                ),
            )

        def on_status(status: str) -> None:
            self._push(websocket, BridgeMessage(type=MessageType.QUERY_STATUS, key=key, data={"status": status}))

        self.engine.open(self._engine_key(websocket, key), spec, on_output, on_status)

    def close_query(self, websocket: WebSocket, key: str) -> bool:
        info = self._connection_info[websocket]
        if key not in info["queries"]:
            return False
        info["queries"].discard(key)
        self.engine.close(self._engine_key(websocket, key))
        return True

    def _push(self, websocket: WebSocket, message: BridgeMessage) -> None:
        """Send from a synchronous engine callback."""
        info = self._connection_info.get(websocket)
        if info is None:
            return
        info["outbox"].put_nowait(message)

    async def _sender(self, websocket: WebSocket, outbox: asyncio.Queue) -> None:
        while websocket in self._connections:
            message = await outbox.get()
            try:
                await self.send_to_connection(websocket, message)
            finally:
                outbox.task_done()

    async def flush(self, websocket: WebSocket) -> None:
        """Wait until every message pushed so far has been sent (or dropped)."""
        info = self._connection_info.get(websocket)
        if info is not None:
            await info["outbox"].join()

    async def send_to_connection(self, websocket: WebSocket, message: BridgeMessage) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            await websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.error("Error sending bridge message: %s", e)
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        return len(self._connections)

    def get_query_count(self) -> int:
        return sum(len(info["queries"]) for info in self._connection_info.values())

    async def handle_message(self, websocket: WebSocket, message_text: str) -> Optional[BridgeMessage]:
        """
        Handle an incoming client frame.

        Returns:
            Immediate response message or None
        """
        try:
            command = parse_command(message_text)
        except ValueError as e:
            return BridgeMessage(type=MessageType.ERROR, data={"error": str(e)})

        if isinstance(command, PingCommand):
            return BridgeMessage(type=MessageType.PONG, data={"timestamp": datetime.now().isoformat()})

        if isinstance(command, QueryCommand):
            self.open_query(websocket, command.key, command.query)
            return None

        if self.close_query(websocket, command.key):
            return BridgeMessage(type=MessageType.QUERY_CLOSED, key=command.key)
        return BridgeMessage(type=MessageType.ERROR, key=command.key, data={"error": "Unknown query key"})
