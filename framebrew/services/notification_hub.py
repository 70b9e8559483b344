"""Server-Sent Events fan-out to connected clients.

The hub keeps one bounded outbox per connection, tagged with the caller's
user and organization. Pipeline events are pushed per organization; the SSE
route drains a connection's outbox with :meth:`NotificationHub.stream`.

Delivery Semantics:
    - At-most-once, in memory, not durable. Reconnecting clients re-fetch
      job state through the REST API.
    - A delivery counts as acknowledged once the stream generator resumes
      after yielding it (the transport accepted the write).
    - Every ``heartbeat_interval`` (15s) each live connection receives a
      heartbeat; a connection with no acknowledged delivery for
      ``stale_after`` (30s), or whose outbox overflowed, is pruned. Pruning
      cancels the task streaming to it, so a write stuck in the transport
      does not keep the connection open.

Connection Lifecycle:
    connect(token) → "connected" event queued → stream() yields frames
    → disconnect() on client close, or prune on staleness/overflow

Usage:
    hub = NotificationHub(token_service.verify)
    await hub.start()
    connection_id = hub.connect(token)
    async for frame in hub.stream(connection_id):
        ...
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from framebrew.config import get_sse_heartbeat_interval, get_sse_stale_after
from framebrew.schemas.events import StreamEvent, connected_event, heartbeat_event
from framebrew.utils.logging import get_logger
from framebrew.utils.tokens import Principal

log = get_logger(__name__)

DEFAULT_MAX_BUFFER = 256


@dataclass
class Connection:
    id: str
    user_id: str
    org_id: str
    outbox: asyncio.Queue
    connected_at: float
    last_seen: float
    closed: bool = False
    delivered: int = field(default=0)
    # Task draining the outbox, set once stream() starts
    task: asyncio.Task | None = None


class NotificationHub:
    """Per-organization live event fan-out.

    Args:
        verify_token: Callable returning a Principal or raising AuthenticationError.
        heartbeat_interval: Seconds between heartbeats.
        stale_after: Seconds without an acknowledged delivery before pruning.
        max_buffer: Outbox size; overflowing connections are pruned.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        verify_token: Callable[[str | None], Principal],
        heartbeat_interval: float | None = None,
        stale_after: float | None = None,
        max_buffer: int = DEFAULT_MAX_BUFFER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._verify_token = verify_token
        self.heartbeat_interval = heartbeat_interval or get_sse_heartbeat_interval()
        self.stale_after = stale_after or get_sse_stale_after()
        self.max_buffer = max_buffer
        self._clock = clock
        self._connections: dict[str, Connection] = {}
        self._heartbeat_task: asyncio.Task | None = None

    def connect(self, token: str | None) -> str:
        """Register a client connection.

        Raises:
            AuthenticationError: Token missing or invalid. Nothing is registered.
        """
        principal = self._verify_token(token)
        now = self._clock()
        connection = Connection(
            id=uuid.uuid4().hex,
            user_id=principal.user_id,
            org_id=principal.org_id,
            outbox=asyncio.Queue(maxsize=self.max_buffer),
            connected_at=now,
            last_seen=now,
        )
        self._connections[connection.id] = connection
        self._push(connection, connected_event(connection.id))
        log.info(
            "sse_client_connected",
            connection_id=connection.id,
            user_id=principal.user_id,
            org_id=principal.org_id,
            total_connections=len(self._connections),
        )
        return connection.id

    def principal_for(self, connection_id: str) -> Principal | None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return None
        return Principal(user_id=connection.user_id, org_id=connection.org_id)

    def _push(self, connection: Connection, event: StreamEvent) -> bool:
        if connection.closed:
            return False
        try:
            connection.outbox.put_nowait(event)
        except asyncio.QueueFull:
            self._prune(connection, reason="buffer_overflow")
            return False
        return True

    def send(self, connection_id: str, event: StreamEvent) -> bool:
        """Queue an event for one connection. Returns False if it is gone."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return self._push(connection, event)

    def _fan_out(self, connections: list[Connection], event: StreamEvent) -> int:
        return sum(1 for connection in connections if self._push(connection, event))

    def broadcast_to_org(self, org_id: str, event: StreamEvent) -> int:
        """Queue an event for every connection of an organization."""
        targets = [c for c in self._connections.values() if c.org_id == org_id]
        delivered = self._fan_out(targets, event)
        log.debug("sse_org_broadcast", org_id=org_id, event_type=event.type.value, delivered=delivered)
        return delivered

    def broadcast_to_user(self, user_id: str, event: StreamEvent) -> int:
        targets = [c for c in self._connections.values() if c.user_id == user_id]
        return self._fan_out(targets, event)

    def broadcast(self, event: StreamEvent) -> int:
        return self._fan_out(list(self._connections.values()), event)

    async def publish(self, org_id: str, event: StreamEvent) -> None:
        """Event-sink interface used by the status projector."""
        self.broadcast_to_org(org_id, event)

    def ack(self, connection_id: str) -> None:
        """Record that a delivery reached the transport."""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_seen = self._clock()
            connection.delivered += 1

    def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        self._close(connection)
        log.info(
            "sse_client_disconnected",
            connection_id=connection_id,
            org_id=connection.org_id,
            delivered=connection.delivered,
            total_connections=len(self._connections),
        )

    def _close(self, connection: Connection) -> None:
        connection.closed = True
        while not connection.outbox.empty():
            connection.outbox.get_nowait()
        connection.outbox.put_nowait(None)

    def _prune(self, connection: Connection, reason: str) -> None:
        self._connections.pop(connection.id, None)
        self._close(connection)
        # A send stuck in the transport never reads the close sentinel
        if connection.task is not None and not connection.task.done():
            if connection.task is not asyncio.current_task():
                connection.task.cancel()
        log.warning(
            "sse_client_pruned",
            connection_id=connection.id,
            org_id=connection.org_id,
            reason=reason,
            idle_seconds=round(self._clock() - connection.last_seen, 1),
        )

    def heartbeat_once(self) -> int:
        """Prune stale connections and heartbeat the rest. Returns the number pruned."""
        now = self._clock()
        pruned = 0
        for connection in list(self._connections.values()):
            if now - connection.last_seen > self.stale_after:
                self._prune(connection, reason="stale")
                pruned += 1
            elif not self._push(connection, heartbeat_event()):
                pruned += 1
        return pruned

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            pruned = self.heartbeat_once()
            if pruned:
                log.info("sse_heartbeat_pruned", pruned=pruned, remaining=len(self._connections))

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            log.info("sse_heartbeat_started", interval=self.heartbeat_interval)

    async def stop(self) -> None:
        """Stop heartbeats and close every connection."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for connection_id in list(self._connections):
            self.disconnect(connection_id)
        log.info("sse_hub_stopped")

    async def stream(self, connection_id: str) -> AsyncIterator[str]:
        """Yield SSE frames for a connection until it is closed or pruned."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.task = asyncio.current_task()
        try:
            while True:
                event = await connection.outbox.get()
                if event is None:
                    return
                yield event.to_sse()
                self.ack(connection_id)
        finally:
            self.disconnect(connection_id)

    def stats(self) -> dict:
        by_org: dict[str, int] = {}
        by_user: dict[str, int] = {}
        for connection in self._connections.values():
            by_org[connection.org_id] = by_org.get(connection.org_id, 0) + 1
            by_user[connection.user_id] = by_user.get(connection.user_id, 0) + 1
        return {
            "total_connections": len(self._connections),
            "connections_by_org": by_org,
            "connections_by_user": by_user,
        }
