"""
Event channel client for the tsquery engine.

Keeps one live WebSocket connection to the server's event endpoint and
routes every inbound event to the local subscriptions whose filter matches.
Subscriptions are in-process and keyed by caller-chosen strings; the server
side is simply asked for every event of the logged-in user.

Reconnection is best-effort: after each close the router waits, then
reconnects, and the wait grows by a fixed delta on every consecutive failure
until a connection opens again.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import websockets
from websockets.exceptions import WebSocketException

from .errors import MalformedEvent, TransportError
from .shared.logger import get_logger

logger = get_logger(__name__)

WILDCARD = "*"

# Fields of an event that carry routing metadata, in filter-check order.
ROUTING_FIELDS = ("object", "app", "user", "plugin", "key")


@dataclass
class Event:
    """An inbound event: routing metadata plus an arbitrary payload."""

    event: str
    object: Optional[str] = None
    app: Optional[str] = None
    user: Optional[str] = None
    plugin: Optional[str] = None
    key: Optional[str] = None
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        out = {"event": self.event}
        for name in ROUTING_FIELDS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        if self.data is not None:
            out["data"] = self.data
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        if not isinstance(data, dict):
            raise MalformedEvent(f"Event must be an object, got {type(data).__name__}", data)
        name = data.get("event")
        if not isinstance(name, str):
            raise MalformedEvent("Event is missing its 'event' name", data)
        return cls(
            event=name,
            object=data.get("object"),
            app=data.get("app"),
            user=data.get("user"),
            plugin=data.get("plugin"),
            key=data.get("key"),
            data=data.get("data"),
        )

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Event":
        """Parse one text frame into an Event."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"Invalid event frame: {e}", raw) from e
        return cls.from_dict(data)


@dataclass
class EventFilter:
    """Which events a subscription wants.

    ``event``, ``object``, ``app`` and ``user`` accept the ``*`` wildcard.
    ``plugin`` and ``key`` never do: when set they need an exact match.
    Fields left as None impose no constraint.
    """

    event: str
    object: Optional[str] = None
    app: Optional[str] = None
    user: Optional[str] = None
    plugin: Optional[str] = None
    key: Optional[str] = None

    def matches(self, e: Event) -> bool:
        if self.event != e.event and self.event != WILDCARD:
            return False
        for name in ("object", "app", "user"):
            wanted = getattr(self, name)
            if wanted is not None and wanted != WILDCARD:
                got = getattr(e, name)
                if got is None or got != wanted:
                    return False
        for name in ("plugin", "key"):
            wanted = getattr(self, name)
            if wanted is not None:
                got = getattr(e, name)
                if got is None or got != wanted:
                    return False
        return True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventFilter":
        if "event" not in data:
            raise ValueError("Event filter requires an 'event' field")
        return cls(
            event=data["event"],
            object=data.get("object"),
            app=data.get("app"),
            user=data.get("user"),
            plugin=data.get("plugin"),
            key=data.get("key"),
        )


def match(event_filter: Union[EventFilter, Dict[str, Any]], e: Event) -> bool:
    """Return True if the event passes the filter."""
    if isinstance(event_filter, dict):
        event_filter = EventFilter.from_dict(event_filter)
    return event_filter.matches(e)


EventCallback = Callable[[Event], Any]
StatusListener = Callable[[Optional[float]], Any]


@dataclass
class Subscription:
    """A registered interest in events, identified by a caller-chosen key."""

    key: str
    filter: EventFilter
    callback: EventCallback = field(repr=False)


class EventRouter:
    """
    Owns the event channel connection and dispatches events to subscriptions.

    The router is driven by ``start()``, which runs the connect/receive/
    reconnect loop as a background task. ``on_open``, ``on_close`` and
    ``on_message`` hold the behavior and can be driven directly.
    """

    def __init__(
        self,
        url: str,
        username: Optional[str] = None,
        *,
        reconnect: bool = False,
        reset_timeout: float = 0.2,
        retry_timeout_delta: float = 1.0,
        headers: Optional[Dict[str, str]] = None,
        connect: Optional[Callable[[], Any]] = None,
    ):
        """Initialize the router.

        Args:
            url: WebSocket URL of the event endpoint
            username: Principal to request events for on open
            reconnect: Whether to reconnect after the connection closes
            reset_timeout: Initial reconnect delay in seconds
            retry_timeout_delta: Added to the delay after every failed attempt
            headers: Extra handshake headers (auth)
            connect: Factory returning an async context manager that yields
                a connection; defaults to ``websockets.connect(url)``
        """
        self.url = url
        self.username = username
        self.reconnect = reconnect
        self.reset_timeout = reset_timeout
        self.retry_timeout = reset_timeout
        self.retry_timeout_delta = retry_timeout_delta
        self.headers = headers or {}
        self._connect = connect or self._default_connect

        self.subscriptions: Dict[str, Subscription] = {}
        self._status_listeners: List[StatusListener] = []

        # Whether the socket is open, and when it was opened
        self.isopen = False
        self.status: Optional[float] = None
        # Why the last connection attempt or session ended, if it failed
        self.last_error: Optional[TransportError] = None

        self._ws = None
        self._task: Optional[asyncio.Task] = None

    def _default_connect(self):
        return websockets.connect(self.url, additional_headers=self.headers or None)

    # ============= Subscriptions =============

    def subscribe(
        self,
        key: str,
        event_filter: Union[EventFilter, Dict[str, Any]],
        callback: EventCallback,
    ) -> Subscription:
        """Register (or replace) the subscription stored under ``key``."""
        if isinstance(event_filter, dict):
            event_filter = EventFilter.from_dict(event_filter)
        sub = Subscription(key=key, filter=event_filter, callback=callback)
        self.subscriptions[key] = sub
        return sub

    def unsubscribe(self, key: str) -> None:
        """Remove the subscription stored under ``key``, if any."""
        self.subscriptions.pop(key, None)

    def add_status_listener(self, listener: StatusListener) -> None:
        """Call ``listener(timestamp)`` on open and ``listener(None)`` on close."""
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        try:
            self._status_listeners.remove(listener)
        except ValueError:
            pass

    def _notify_status(self) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(self.status)
            except Exception as e:
                logger.error("Error in connection status listener: %s", e)

    # ============= Connection lifecycle =============

    async def start(self) -> None:
        """Start the connect/receive loop in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop reconnecting and close the current connection."""
        self.reconnect = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.isopen:
            self.on_close()

    async def _run(self) -> None:
        while True:
            logger.debug("Connecting to event channel %s", self.url)
            try:
                async with self._connect() as ws:
                    self._ws = ws
                    await self.on_open()
                    async for raw in ws:
                        self.on_message(raw)
            except Exception as e:
                # Never fatal: every failure ends in on_close and backoff
                self._transport_failed(e)
            finally:
                self._ws = None

            delay = self.on_close()
            if delay is None:
                return
            await asyncio.sleep(delay)

    def _transport_failed(self, error: Exception) -> TransportError:
        err = TransportError(f"{self.url}: {error}")
        err.__cause__ = error
        self.last_error = err
        if isinstance(error, (OSError, WebSocketException)):
            logger.warning("Event channel unavailable: %s", err.status_message())
        else:
            logger.error("Unexpected event channel failure (%s): %s", type(error).__name__, err.status_message())
        return err

    async def on_open(self) -> None:
        """Mark the connection live and ask the server for the user's events."""
        logger.info("Event channel open: %s", self.url)
        self.isopen = True
        self.last_error = None
        self.retry_timeout = self.reset_timeout

        if self.username is not None:
            await self.send({"cmd": "subscribe", "event": WILDCARD, "user": self.username})

        self.status = time.time()
        self._notify_status()

    def on_close(self) -> Optional[float]:
        """Mark the connection down.

        Returns:
            Seconds to wait before reconnecting, or None when not reconnecting.
        """
        logger.info("Event channel closed: %s", self.url)
        self.isopen = False
        self.status = None
        self._notify_status()

        if not self.reconnect:
            logger.debug("Not retrying to connect.")
            return None
        delay = self.retry_timeout
        self.retry_timeout += self.retry_timeout_delta
        return delay

    def on_message(self, raw: Union[str, bytes]) -> int:
        """Parse one frame and deliver it to every matching subscription.

        Returns:
            Number of subscriptions the event was delivered to
        """
        try:
            event = Event.from_json(raw)
        except MalformedEvent as e:
            logger.warning("Dropping event frame: %s", e)
            return 0

        logger.debug("-> %s", event)
        delivered = 0
        # Snapshot: subscriptions added during delivery do not see this event
        for sub in list(self.subscriptions.values()):
            if not sub.filter.matches(event):
                continue
            delivered += 1
            try:
                sub.callback(event)
            except Exception as e:
                logger.error("Error in event subscription '%s': %s", sub.key, e)
        return delivered

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send a control message. Dropped (not queued) while disconnected."""
        if not self.isopen or self._ws is None:
            logger.debug("Event channel closed, dropping %s", message)
            return False
        logger.debug("<- %s", message)
        await self._ws.send(json.dumps(message))
        return True
