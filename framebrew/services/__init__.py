"""Pipeline services: job control, status projection and live event fan-out."""

from framebrew.services.event_relay import PgEventRelay
from framebrew.services.job_service import JobService
from framebrew.services.notification_hub import Connection, NotificationHub
from framebrew.services.status_projector import CANCELLED_MESSAGE, EventSink, StatusProjector

__all__ = [
    "CANCELLED_MESSAGE",
    "Connection",
    "EventSink",
    "JobService",
    "NotificationHub",
    "PgEventRelay",
    "StatusProjector",
]
