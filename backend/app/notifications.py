"""
Outbound side-effect sinks used by the job workers.

Email rendering and delivery live outside this service; the sink only hands a
typed message over. Real-time events are published with Postgres NOTIFY on
the `realtime_events` channel, which the socket gateway listens on.
"""
from __future__ import annotations

import json
import threading
from typing import Any, Optional, Protocol

from .logs import json_log

REALTIME_CHANNEL = "realtime_events"


class NotificationSink(Protocol):
    def send(self, kind: str, to: str, data: dict[str, Any]) -> None: ...


class RealtimePublisher(Protocol):
    def publish(self, room: str, event: str, data: dict[str, Any]) -> None: ...


class OutboxNotificationSink:
    """Writes messages to `email_outbox` for the mail service to pick up."""

    def __init__(self, db):
        self.db = db

    def send(self, kind: str, to: str, data: dict[str, Any]) -> None:
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO email_outbox (id, message_type, recipient, payload_json)
                    VALUES (gen_random_uuid(), %s, %s, %s::jsonb)
                    """,
                    (kind, to, json.dumps(data, default=str)),
                )
        json_log("info", "notifications.email.queued", type=kind, to=to)


class PgNotifyPublisher:
    def __init__(self, db, channel: str = REALTIME_CHANNEL):
        self.db = db
        self.channel = channel

    def publish(self, room: str, event: str, data: dict[str, Any]) -> None:
        payload = json.dumps({"room": room, "event": event, "data": data}, default=str)
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_notify(%s, %s)", (self.channel, payload))


class InMemoryPublisher:
    def __init__(self):
        self._lock = threading.Lock()
        self.events: list[dict[str, Any]] = []

    def publish(self, room: str, event: str, data: dict[str, Any]) -> None:
        with self._lock:
            self.events.append({"room": room, "event": event, "data": data})


class InMemoryNotificationSink:
    def __init__(self):
        self._lock = threading.Lock()
        self.sent: list[dict[str, Any]] = []

    def send(self, kind: str, to: str, data: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append({"type": kind, "to": to, "data": data})


def owner_email(cur, organization_id) -> Optional[str]:
    cur.execute(
        """
        SELECT email
        FROM users
        WHERE organization_id = %s AND role = 'owner' AND email IS NOT NULL
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (organization_id,),
    )
    row = cur.fetchone()
    return row["email"] if row else None
