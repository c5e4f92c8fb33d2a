"""
Inventory Service — transactional outbox

Events are appended to the outbox inside the same transaction as the state
change that caused them, so nothing is announced for a write that is later
rolled back. The dispatcher (dispatcher.py) then delivers committed rows to
the broker.

  ┌──────────────┐  same tx   ┌────────┐  after commit  ┌───────┐
  │ engine write │ ─────────▶ │ outbox │ ─────────────▶ │ Redis │
  └──────────────┘            └────────┘   dispatcher   └───────┘
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .events import OutboxEvent

_COLUMNS = """
    id, event_id, event_type, topic, payload, occurred_at,
    available_at, published_at, publish_attempts, last_error
"""


def _row_to_event(row) -> OutboxEvent:
    return OutboxEvent(
        id=row.id,
        event_id=row.event_id,
        event_type=row.event_type,
        topic=row.topic,
        payload=json.loads(row.payload) if isinstance(row.payload, str) else row.payload,
        occurred_at=row.occurred_at,
        available_at=row.available_at,
        published_at=row.published_at,
        publish_attempts=row.publish_attempts,
        last_error=row.last_error,
    )


async def append_event(session: AsyncSession, topic: str, payload: dict) -> OutboxEvent:
    now = datetime.now(timezone.utc)
    result = await session.execute(
        text(f"""
            INSERT INTO outbox
                (event_id, event_type, topic, payload, occurred_at, available_at)
            VALUES
                (:event_id, :event_type, :topic, CAST(:payload AS JSONB),
                 :occurred_at, :now)
            RETURNING {_COLUMNS}
        """),
        {
            "event_id": UUID(payload["event_id"]),
            "event_type": payload["event_type"],
            "topic": topic,
            "payload": json.dumps(payload, default=str),
            "occurred_at": datetime.fromisoformat(payload["occurred_at"]),
            "now": now,
        },
    )
    return _row_to_event(result.one())


async def load_pending(session: AsyncSession, limit: int) -> list[OutboxEvent]:
    """Unpublished rows that are due, oldest first, locked for this dispatcher."""
    result = await session.execute(
        text(f"""
            SELECT {_COLUMNS}
            FROM outbox
            WHERE published_at IS NULL AND available_at <= :now
            ORDER BY id ASC
            LIMIT :limit
            FOR UPDATE SKIP LOCKED
        """),
        {"now": datetime.now(timezone.utc), "limit": limit},
    )
    return [_row_to_event(row) for row in result.fetchall()]


async def mark_published(session: AsyncSession, outbox_id: int) -> None:
    await session.execute(
        text("""
            UPDATE outbox
            SET published_at = :now,
                publish_attempts = publish_attempts + 1,
                last_error = NULL
            WHERE id = :id
        """),
        {"id": outbox_id, "now": datetime.now(timezone.utc)},
    )


async def mark_failed(
    session: AsyncSession,
    outbox_id: int,
    error: str,
    retry_at: datetime | None,
) -> None:
    # retry_at of None parks the row: it stays unpublished but is never due.
    await session.execute(
        text("""
            UPDATE outbox
            SET publish_attempts = publish_attempts + 1,
                last_error = :error,
                available_at = :retry_at
            WHERE id = :id
        """),
        {"id": outbox_id, "error": error[:512], "retry_at": retry_at},
    )
