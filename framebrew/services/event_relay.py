"""Cross-process event relay over PostgreSQL LISTEN/NOTIFY.

With the durable queue, stages run in worker processes while clients are
connected to the API process. Worker-side status projectors publish events
with ``pg_notify``; the API process listens on the same channel and forwards
each event to its ``NotificationHub``.

NOTIFY payloads are limited to 8000 bytes; pipeline events are far smaller.
"""

import json
from typing import Any

import asyncpg

from framebrew.schemas.events import StreamEvent
from framebrew.services.notification_hub import NotificationHub
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

EVENTS_CHANNEL = "framebrew_events"


class PgEventRelay:
    """Publish events through NOTIFY and deliver them to a local hub on LISTEN."""

    def __init__(self, pool: asyncpg.Pool, channel: str = EVENTS_CHANNEL) -> None:
        self.pool = pool
        self.channel = channel
        self._listen_conn: asyncpg.Connection | None = None
        self._hub: NotificationHub | None = None

    async def publish(self, org_id: str, event: StreamEvent) -> None:
        """Event-sink interface used by the status projector."""
        payload = json.dumps({"org_id": org_id, "event": event.model_dump(mode="json")})
        await self.pool.execute("SELECT pg_notify($1, $2)", self.channel, payload)

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        if self._hub is None:
            return
        try:
            message = json.loads(payload)
            org_id = message["org_id"]
            event = StreamEvent.model_validate(message["event"])
        except (ValueError, KeyError, TypeError) as e:
            log.warning("event_relay_bad_payload", error=str(e), payload=payload[:200])
            return
        self._hub.broadcast_to_org(org_id, event)

    async def listen(self, hub: NotificationHub) -> None:
        """Start forwarding relayed events to ``hub``."""
        self._hub = hub
        self._listen_conn = await self.pool.acquire()
        await self._listen_conn.add_listener(self.channel, self._on_notification)
        log.info("event_relay_listening", channel=self.channel)

    async def close(self) -> None:
        if self._listen_conn is not None:
            await self._listen_conn.remove_listener(self.channel, self._on_notification)
            await self.pool.release(self._listen_conn)
            self._listen_conn = None
        self._hub = None
