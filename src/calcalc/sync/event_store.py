"""Local ``calendars``/``events`` persistence used by the reconciliation engine."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from calcalc.db import Database
from calcalc.sync.errors import PersistenceError, RowRejectedError
from calcalc.sync.models import Attendee, CalendarRef, LocalEvent

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = """
    event_id, user_id, calendar_id, summary, description, location,
    start_time, end_time, all_day, timezone_id, status, transparency,
    sequence, recurring_id, recurrence, attendees, google_id,
    google_calendar_id, income, expenses, tax_rate, created_at, updated_at
"""

# Imports overwrite the mapped fields only.  Financial columns are never
# touched and sequence never moves backwards.
_UPSERT_REMOTE_EVENT_SQL = f"""
INSERT INTO events (
    event_id, user_id, calendar_id, summary, description, location,
    start_time, end_time, all_day, timezone_id, status, transparency,
    sequence, recurring_id, recurrence, attendees, google_id,
    google_calendar_id, created_at, updated_at
)
VALUES (
    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
    $15::jsonb, $16::jsonb, $17, $18, COALESCE($19, now()), COALESCE($20, now())
)
ON CONFLICT (user_id, google_calendar_id, google_id) WHERE google_id IS NOT NULL
DO UPDATE SET
    calendar_id = EXCLUDED.calendar_id,
    summary = EXCLUDED.summary,
    description = EXCLUDED.description,
    location = EXCLUDED.location,
    start_time = EXCLUDED.start_time,
    end_time = EXCLUDED.end_time,
    all_day = EXCLUDED.all_day,
    timezone_id = EXCLUDED.timezone_id,
    status = EXCLUDED.status,
    transparency = EXCLUDED.transparency,
    sequence = GREATEST(events.sequence, EXCLUDED.sequence),
    recurring_id = EXCLUDED.recurring_id,
    recurrence = EXCLUDED.recurrence,
    attendees = EXCLUDED.attendees,
    updated_at = now()
RETURNING {_EVENT_COLUMNS}, (xmax = 0) AS inserted
"""


def _dump_json(value: list | None) -> str | None:
    return json.dumps(value) if value is not None else None


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _event_from_row(row: Any) -> LocalEvent:
    attendees = _load_json(row["attendees"])
    return LocalEvent(
        event_id=row["event_id"],
        user_id=row["user_id"],
        calendar_id=row["calendar_id"],
        summary=row["summary"],
        description=row["description"],
        location=row["location"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        all_day=row["all_day"],
        timezone_id=row["timezone_id"],
        status=row["status"],
        transparency=row["transparency"],
        sequence=row["sequence"],
        recurring_id=row["recurring_id"],
        recurrence=_load_json(row["recurrence"]),
        attendees=[Attendee.model_validate(a) for a in attendees] if attendees else None,
        google_id=row["google_id"],
        google_calendar_id=row["google_calendar_id"],
        income=row["income"],
        expenses=row["expenses"],
        tax_rate=row["tax_rate"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class EventStore:
    """Reads and writes the local event rows touched by sync.

    Writes that belong to an import batch take the batch's connection so
    they share one transaction; see :meth:`transaction`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """One transaction for a whole import batch."""
        async with self._db.transaction() as conn:
            yield conn

    async def upsert_calendar(
        self, conn: asyncpg.Connection, user_id: str, ref: CalendarRef
    ) -> None:
        """Insert or refresh the calendar's name and timezone.

        Unknown metadata (``None``) never erases a previously stored value.
        """
        await conn.execute(
            """
            INSERT INTO calendars (user_id, calendar_id, name, timezone_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, calendar_id) DO UPDATE SET
                name = COALESCE(EXCLUDED.name, calendars.name),
                timezone_id = COALESCE(EXCLUDED.timezone_id, calendars.timezone_id),
                updated_at = now()
            """,
            user_id,
            ref.id,
            ref.summary,
            ref.time_zone,
        )

    async def upsert_remote_event(
        self, conn: asyncpg.Connection, event: LocalEvent
    ) -> tuple[LocalEvent, bool]:
        """Insert or update a linked event keyed by its Google id.

        Runs inside a savepoint so a row the database rejects leaves the
        batch transaction usable.  Returns the stored row and whether it
        was newly inserted.

        Raises
        ------
        RowRejectedError
            The database refused this row (constraint or data error).
        """
        if not event.is_linked:
            raise ValueError("only linked events can be upserted from Google")
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    _UPSERT_REMOTE_EVENT_SQL,
                    event.event_id,
                    event.user_id,
                    event.calendar_id,
                    event.summary,
                    event.description,
                    event.location,
                    event.start_time,
                    event.end_time,
                    event.all_day,
                    event.timezone_id,
                    str(event.status),
                    str(event.transparency),
                    event.sequence,
                    event.recurring_id,
                    _dump_json(event.recurrence),
                    _dump_json(
                        [a.model_dump(mode="json") for a in event.attendees]
                        if event.attendees is not None
                        else None
                    ),
                    event.google_id,
                    event.google_calendar_id,
                    event.created_at,
                    event.updated_at,
                )
        except (asyncpg.IntegrityConstraintViolationError, asyncpg.DataError) as exc:
            raise RowRejectedError(f"{type(exc).__name__}: {exc}") from exc
        return _event_from_row(row), bool(row["inserted"])

    async def list_unlinked(self, user_id: str) -> list[LocalEvent]:
        """Export candidates: the user's events that have no Google id."""
        rows = await self._db.fetch(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM events
            WHERE user_id = $1 AND google_id IS NULL
            ORDER BY start_time, event_id
            """,
            user_id,
        )
        return [_event_from_row(row) for row in rows]

    async def get_events(self, user_id: str, event_ids: Iterable[str]) -> dict[str, LocalEvent]:
        """Fetch the given events owned by *user_id*, keyed by event id."""
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return {}
        rows = await self._db.fetch(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM events
            WHERE user_id = $1 AND event_id = ANY($2::text[])
            """,
            user_id,
            ids,
        )
        return {row["event_id"]: _event_from_row(row) for row in rows}

    async def link_event(self, event_id: str, google_id: str, google_calendar_id: str) -> None:
        """Record the Google id on a freshly exported event.

        Raises
        ------
        PersistenceError
            The row no longer exists or was linked by someone else.
        """
        result = await self._db.execute(
            """
            UPDATE events
            SET google_id = $2, google_calendar_id = $3, updated_at = now()
            WHERE event_id = $1 AND google_id IS NULL
            """,
            event_id,
            google_id,
            google_calendar_id,
        )
        if result != "UPDATE 1":
            raise PersistenceError(
                f"Event {event_id} could not be linked (missing or already linked)"
            )
