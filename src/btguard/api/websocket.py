"""
Live pairing event stream.

Forwards engine events (prompts opened and answered, attempt outcomes,
policy changes) to WebSocket clients. A client that
connects late is sent the outstanding prompts in its greeting so it can
still answer them.
"""

from __future__ import annotations

import asyncio
import fnmatch
import itertools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from fastapi import WebSocket, WebSocketDisconnect, status

from btguard.api.auth import key_manager

logger = logging.getLogger(__name__)

_sequence = itertools.count(1)


class WebSocketEventType(str, Enum):
    """Event names carried on the stream."""

    PROMPT_OPENED = "prompt.opened"
    PROMPT_RESOLVED = "prompt.resolved"
    DEVICE_ALLOWED = "device.allowed"
    DEVICE_REJECTED = "device.rejected"
    DEVICE_IGNORED = "device.ignored"
    POLICY_UPDATED = "policy.updated"
    SYSTEM_STATUS = "system.status"
    HEARTBEAT = "heartbeat"

    # Sent by clients
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    WATCH = "watch"


@dataclass
class WebSocketMessage:
    """One message on the stream, numbered in publication order."""

    event_type: WebSocketEventType | str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    seq: int = field(default_factory=lambda: next(_sequence))

    @property
    def event_name(self) -> str:
        if isinstance(self.event_type, WebSocketEventType):
            return self.event_type.value
        return self.event_type

    @property
    def identities(self) -> set[str]:
        """Devices the message concerns (empty for system messages)."""
        found = set(self.data.get("identities") or [])
        if self.data.get("identity"):
            found.add(self.data["identity"])
        return found

    def to_json(self) -> str:
        return json.dumps(
            {
                "seq": self.seq,
                "event": self.event_name,
                "data": self.data,
                "timestamp": self.timestamp.isoformat(),
            },
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> WebSocketMessage:
        parsed = json.loads(raw)
        data = parsed.get("data") or {}
        if not isinstance(data, dict):
            data = {}
        return cls(
            event_type=parsed.get("event", "unknown"),
            data=data,
            seq=int(parsed.get("seq", 0)),
        )


@dataclass
class WebSocketConnection:
    """
    A connected client and its filters.

    Attributes:
        websocket: The WebSocket instance
        client_id: Client identifier (a reconnect replaces the old socket)
        subscriptions: Event name patterns such as "prompt.*"; empty means all
        devices: Only forward events about these devices; empty means all
    """

    websocket: WebSocket
    client_id: str
    subscriptions: set[str] = field(default_factory=set)
    devices: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def wants(self, message: WebSocketMessage) -> bool:
        if self.subscriptions and not any(
            fnmatch.fnmatchcase(message.event_name, pattern)
            for pattern in self.subscriptions
        ):
            return False
        concerned = message.identities
        if self.devices and concerned and not (concerned & self.devices):
            return False
        return True

    async def send(self, message: WebSocketMessage) -> bool:
        try:
            await self.websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.debug(f"Send to {self.client_id} failed: {e}")
            return False


class ConnectionManager:
    """
    Fans engine events out to connected clients.

    Engine listeners run synchronously on the event loop, so events are
    queued with broadcast_nowait() and delivered by one background task,
    which also sends a heartbeat whenever the stream has been idle for
    heartbeat_interval seconds.
    """

    def __init__(self, heartbeat_interval: float = 30.0) -> None:
        self.heartbeat_interval = heartbeat_interval
        # Supplies outstanding prompts for the connect greeting
        self.pending_prompts: Callable[[], list[dict[str, Any]]] | None = None

        self._connections: dict[str, WebSocketConnection] = {}
        self._queue: asyncio.Queue[WebSocketMessage] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._delivered = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._deliver_loop())
        logger.info("Event stream started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        connections = list(self._connections.values())
        self._connections.clear()
        for conn in connections:
            try:
                await conn.websocket.close()
            except Exception as e:
                logger.debug(f"Error closing {conn.client_id}: {e}")

        logger.info("Event stream stopped")

    async def connect(self, websocket: WebSocket, client_id: str) -> WebSocketConnection:
        """Accept a client and greet it with the current prompt backlog."""
        await websocket.accept()
        conn = WebSocketConnection(websocket=websocket, client_id=client_id)

        replaced = self._connections.get(client_id)
        self._connections[client_id] = conn
        if replaced is not None:
            try:
                await replaced.websocket.close()
            except Exception as e:
                logger.debug(f"Error closing replaced connection {client_id}: {e}")

        logger.info(f"Event stream client connected: {client_id}")

        pending: list[dict[str, Any]] = []
        if self.pending_prompts is not None:
            try:
                pending = self.pending_prompts()
            except Exception as e:
                logger.error(f"Could not list pending prompts: {e}")

        await conn.send(
            WebSocketMessage(
                event_type=WebSocketEventType.SYSTEM_STATUS,
                data={
                    "status": "connected",
                    "client_id": client_id,
                    "pending_prompts": pending,
                },
            )
        )
        return conn

    def disconnect(self, conn: WebSocketConnection) -> None:
        # A reconnect may already have replaced this socket
        if self._connections.get(conn.client_id) is conn:
            del self._connections[conn.client_id]
            logger.info(f"Event stream client disconnected: {conn.client_id}")

    def broadcast_nowait(self, message: WebSocketMessage) -> bool:
        """
        Queue a message for delivery. Must be called on the event loop.

        Returns:
            False if the stream is not running and the message was dropped
        """
        if not self.running:
            return False
        self._queue.put_nowait(message)
        return True

    async def handle_client_message(self, conn: WebSocketConnection, raw: str) -> None:
        """Apply a subscribe, unsubscribe or watch request from a client."""
        try:
            message = WebSocketMessage.from_json(raw)
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
            logger.warning(f"Invalid message from {conn.client_id}")
            return

        if message.event_name == WebSocketEventType.SUBSCRIBE.value:
            conn.subscriptions.update(message.data.get("events") or [])
        elif message.event_name == WebSocketEventType.UNSUBSCRIBE.value:
            conn.subscriptions.difference_update(message.data.get("events") or [])
        elif message.event_name == WebSocketEventType.WATCH.value:
            conn.devices = set(message.data.get("devices") or [])
        else:
            logger.debug(f"Ignoring {message.event_name!r} from {conn.client_id}")

    async def _deliver(self, message: WebSocketMessage) -> None:
        for conn in list(self._connections.values()):
            if not conn.wants(message):
                continue
            if await conn.send(message):
                self._delivered += 1
            else:
                self.disconnect(conn)

    async def _deliver_loop(self) -> None:
        while True:
            try:
                message = await asyncio.wait_for(
                    self._queue.get(), timeout=self.heartbeat_interval
                )
            except asyncio.TimeoutError:
                message = WebSocketMessage(
                    event_type=WebSocketEventType.HEARTBEAT,
                    data={"connections": self.connection_count},
                )
            try:
                await self._deliver(message)
            except Exception as e:
                logger.error(f"Event delivery failed: {e}")

    def get_statistics(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "connections": self.connection_count,
            "queued": self._queue.qsize(),
            "delivered": self._delivered,
        }


manager = ConnectionManager()


def publish_engine_event(event_type: str, payload: dict[str, Any]) -> None:
    """TrustEngine listener forwarding events to the stream."""
    manager.broadcast_nowait(WebSocketMessage(event_type=event_type, data=payload))


async def websocket_endpoint(
    websocket: WebSocket,
    client_id: str | None = None,
    api_key: str | None = None,
) -> None:
    """Serve one event stream client until it disconnects."""
    if not key_manager.validate_key(api_key):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    conn = await manager.connect(websocket, client_id or f"client_{next(_sequence)}")
    try:
        while True:
            await manager.handle_client_message(conn, await websocket.receive_text())
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Event stream error for {conn.client_id}: {e}")
    finally:
        manager.disconnect(conn)


async def init_websocket() -> None:
    await manager.start()


async def shutdown_websocket() -> None:
    await manager.stop()
