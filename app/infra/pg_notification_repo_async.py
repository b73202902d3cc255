# app/infra/pg_notification_repo_async.py
"""
In-app notifications, stored in the ``notifications`` table.

Clients poll or subscribe to the table; delivery beyond the insert is out
of scope here.  ``notify_many`` writes a whole dispatch batch in a single
statement, so a batch is stored entirely or not at all.
"""
from __future__ import annotations

import json
from typing import Any, Sequence

from app.core.jobs.domain import NotificationRequest, NotificationType
from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class AsyncPostgresNotificationSink:

    async def notify(self, user_id: str, type: NotificationType, payload: dict[str, Any]) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "INSERT INTO notifications (user_id, type, payload) VALUES ($1, $2, $3::jsonb)",
                user_id,
                type.value,
                json.dumps(payload),
            )
        inc_counter("notifications_stored", type=type.value)

    async def notify_many(self, items: Sequence[NotificationRequest]) -> None:
        if not items:
            return
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (user_id, type, payload)
                SELECT u, t, p
                FROM unnest($1::uuid[], $2::text[], $3::jsonb[]) AS batch(u, t, p)
                """,
                [item.user_id for item in items],
                [item.type.value for item in items],
                [json.dumps(item.payload) for item in items],
            )
        inc_counter("notifications_stored", len(items), type="batch")
        logger.debug(f"Stored {len(items)} notifications in one batch")


_notification_sink: AsyncPostgresNotificationSink | None = None


def get_notification_sink() -> AsyncPostgresNotificationSink:
    global _notification_sink
    if _notification_sink is None:
        _notification_sink = AsyncPostgresNotificationSink()
    return _notification_sink
