"""Shared fixtures for the sync test suite.

In-memory stand-ins for the token store, the event store and the Google
client let engine, scheduler and API tests run without PostgreSQL or the
network.  The fakes follow the real stores' contracts: the event store
rolls a batch back when its transaction block raises, and linked rows are
keyed by ``(user_id, google_calendar_id, google_id)``.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from calcalc.sync.engine import SyncEngine
from calcalc.sync.errors import (
    PersistenceError,
    ProviderError,
    RowRejectedError,
    SettingsNotFoundError,
)
from calcalc.sync.models import (
    CalendarRef,
    EventBoundary,
    LocalEvent,
    RemoteEvent,
    SyncFrequency,
    SyncSettings,
    SyncSettingsUpdate,
    TokenPair,
    next_sync_after,
)
from calcalc.sync.provider import CalendarClient, CalendarSession, TokenRefreshCallback

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)
USER_ID = "user-1"
CALENDAR_ID = "primary-cal"

# ---------------------------------------------------------------------------
# Token store
# ---------------------------------------------------------------------------


class FakeTokenStore:
    """Dict-backed ``TokenStore`` with the same next_sync rules.

    ``sync_locks`` plays the database advisory locks: engines sharing one
    fake behave like processes sharing one database.
    """

    def __init__(self) -> None:
        self.rows: dict[str, SyncSettings] = {}
        self.fail_mark_synced = False
        self.sync_locks: set[str] = set()

    async def get(self, user_id: str) -> SyncSettings | None:
        row = self.rows.get(user_id)
        return row.model_copy(deep=True) if row is not None else None

    async def require(self, user_id: str) -> SyncSettings:
        settings = await self.get(user_id)
        if settings is None:
            raise SettingsNotFoundError(user_id)
        return settings

    async def upsert(
        self, user_id: str, update: SyncSettingsUpdate, *, now: datetime | None = None
    ) -> SyncSettings:
        now = now or datetime.now(UTC)
        changes = update.model_dump(exclude_unset=True)
        current = self.rows.get(user_id)
        settings = (current or SyncSettings(user_id=user_id)).model_copy(update=changes)
        if current is None or "frequency" in changes:
            settings.next_sync = next_sync_after(settings.frequency, now)
        self.rows[user_id] = settings
        return settings.model_copy(deep=True)

    async def store_tokens(
        self,
        user_id: str,
        tokens: TokenPair,
        *,
        default_calendar_id: str | None = None,
        initial_frequency: SyncFrequency = SyncFrequency.daily,
        now: datetime | None = None,
    ) -> SyncSettings:
        now = now or datetime.now(UTC)
        settings = self.rows.get(user_id) or SyncSettings(
            user_id=user_id,
            frequency=initial_frequency,
            next_sync=next_sync_after(initial_frequency, now),
        )
        refresh_token = tokens.refresh_token or settings.tokens.refresh_token
        settings = settings.model_copy(
            update={"tokens": tokens.model_copy(update={"refresh_token": refresh_token})}
        )
        if default_calendar_id is not None:
            settings.default_calendar_id = default_calendar_id
        self.rows[user_id] = settings
        return settings.model_copy(deep=True)

    async def update_tokens(self, user_id: str, tokens: TokenPair) -> None:
        settings = self.rows.get(user_id)
        if settings is not None:
            settings.tokens = tokens

    async def mark_synced(self, user_id: str, at: datetime) -> SyncSettings:
        if self.fail_mark_synced:
            raise PersistenceError("settings write failed")
        settings = self.rows.get(user_id)
        if settings is None:
            raise SettingsNotFoundError(user_id)
        settings.last_sync = at
        settings.next_sync = next_sync_after(settings.frequency, at)
        return settings.model_copy(deep=True)

    async def reschedule(self, user_id: str, at: datetime) -> None:
        settings = self.rows.get(user_id)
        if settings is not None:
            settings.next_sync = next_sync_after(settings.frequency, at)

    async def list_due(self, now: datetime) -> list[str]:
        due = [
            s
            for s in self.rows.values()
            if s.next_sync is not None and s.next_sync <= now and s.is_connected
        ]
        return [s.user_id for s in sorted(due, key=lambda s: s.next_sync)]

    @asynccontextmanager
    async def sync_lock(self, user_id: str) -> AsyncIterator[bool]:
        if user_id in self.sync_locks:
            yield False
            return
        self.sync_locks.add(user_id)
        try:
            yield True
        finally:
            self.sync_locks.discard(user_id)


# ---------------------------------------------------------------------------
# Event store
# ---------------------------------------------------------------------------


class FakeEventStore:
    """Dict-backed ``EventStore``.

    ``reject_google_ids`` makes single upserts fail like a constraint
    violation; ``break_batch_on`` raises a batch-breaking ``PersistenceError``
    when that Google id is upserted; ``fail_link_ids`` makes linking fail.
    """

    def __init__(self) -> None:
        self.events: dict[str, LocalEvent] = {}
        self.calendars: dict[tuple[str, str], CalendarRef] = {}
        self.reject_google_ids: set[str] = set()
        self.break_batch_on: str | None = None
        self.fail_link_ids: set[str] = set()
        self.fail_list_unlinked = False

    def add(self, event: LocalEvent) -> LocalEvent:
        self.events[event.event_id] = event
        return event

    def linked(self, user_id: str) -> list[LocalEvent]:
        return [e for e in self.events.values() if e.user_id == user_id and e.is_linked]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[object]:
        snapshot = (copy.deepcopy(self.events), copy.deepcopy(self.calendars))
        try:
            yield object()
        except BaseException:
            self.events, self.calendars = snapshot
            raise

    async def upsert_calendar(self, conn: Any, user_id: str, ref: CalendarRef) -> None:
        current = self.calendars.get((user_id, ref.id))
        if current is not None:
            ref = ref.model_copy(
                update={
                    "summary": ref.summary or current.summary,
                    "time_zone": ref.time_zone or current.time_zone,
                }
            )
        self.calendars[(user_id, ref.id)] = ref

    async def upsert_remote_event(self, conn: Any, event: LocalEvent) -> tuple[LocalEvent, bool]:
        if event.google_id == self.break_batch_on:
            raise PersistenceError("connection lost mid-batch")
        if event.google_id in self.reject_google_ids:
            raise RowRejectedError(f"row for {event.google_id} rejected")
        for existing in self.events.values():
            if (
                existing.user_id == event.user_id
                and existing.google_calendar_id == event.google_calendar_id
                and existing.google_id == event.google_id
            ):
                merged = event.model_copy(
                    update={
                        "event_id": existing.event_id,
                        "income": existing.income,
                        "expenses": existing.expenses,
                        "tax_rate": existing.tax_rate,
                        "sequence": max(existing.sequence, event.sequence),
                        "created_at": existing.created_at,
                    }
                )
                self.events[existing.event_id] = merged
                return merged, False
        self.events[event.event_id] = event
        return event, True

    async def list_unlinked(self, user_id: str) -> list[LocalEvent]:
        if self.fail_list_unlinked:
            raise PersistenceError("events table unavailable")
        return sorted(
            (e for e in self.events.values() if e.user_id == user_id and not e.is_linked),
            key=lambda e: (e.start_time, e.event_id),
        )

    async def get_events(self, user_id: str, event_ids: Any) -> dict[str, LocalEvent]:
        return {
            event_id: self.events[event_id]
            for event_id in event_ids
            if event_id in self.events and self.events[event_id].user_id == user_id
        }

    async def link_event(self, event_id: str, google_id: str, google_calendar_id: str) -> None:
        event = self.events.get(event_id)
        if event_id in self.fail_link_ids or event is None or event.is_linked:
            raise PersistenceError(f"Event {event_id} could not be linked")
        self.events[event_id] = event.model_copy(
            update={"google_id": google_id, "google_calendar_id": google_calendar_id}
        )


# ---------------------------------------------------------------------------
# Google client
# ---------------------------------------------------------------------------


class FakeCalendarSession(CalendarSession):
    """In-memory Google account.

    ``fail_create_summaries`` makes ``create_event`` raise for events with
    those summaries; ``list_error``/``calendar_error`` make the matching
    read fail; ``list_gate`` blocks ``list_events`` until it is set.
    """

    def __init__(self) -> None:
        self.calendars: dict[str, CalendarRef] = {}
        self.remote: dict[str, dict[str, RemoteEvent]] = {}
        self.fail_create_summaries: set[str] = set()
        self.fail_update_ids: set[str] = set()
        self.list_error: ProviderError | None = None
        self.calendar_error: ProviderError | None = None
        self.list_gate: asyncio.Event | None = None
        self.created: list[tuple[str, RemoteEvent]] = []
        self.updated: list[tuple[str, str, RemoteEvent]] = []
        self.deleted: list[tuple[str, str]] = []
        self._next_id = 0

    def add_calendar(self, ref: CalendarRef) -> None:
        self.calendars[ref.id] = ref
        self.remote.setdefault(ref.id, {})

    def add_remote(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        assert event.id is not None
        self.remote.setdefault(calendar_id, {})[event.id] = event
        return event

    async def list_calendars(self) -> list[CalendarRef]:
        if self.calendar_error is not None:
            raise self.calendar_error
        return list(self.calendars.values())

    async def get_calendar(self, calendar_id: str) -> CalendarRef:
        if self.calendar_error is not None:
            raise self.calendar_error
        if calendar_id not in self.calendars:
            raise ProviderError(http_status=404, message="Not Found")
        return self.calendars[calendar_id]

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[RemoteEvent]:
        if self.list_gate is not None:
            await self.list_gate.wait()
        if self.list_error is not None:
            raise self.list_error
        return list(self.remote.get(calendar_id, {}).values())

    async def create_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        if event.summary in self.fail_create_summaries:
            raise ProviderError(http_status=400, message=f"Invalid event: {event.summary}")
        self._next_id += 1
        created = event.model_copy(update={"id": f"g-{self._next_id}"})
        self.remote.setdefault(calendar_id, {})[created.id] = created
        self.created.append((calendar_id, created))
        return created

    async def update_event(
        self, calendar_id: str, remote_id: str, event: RemoteEvent
    ) -> RemoteEvent:
        if remote_id in self.fail_update_ids:
            raise ProviderError(http_status=404, message="Not Found")
        updated = event.model_copy(update={"id": remote_id})
        self.remote.setdefault(calendar_id, {})[remote_id] = updated
        self.updated.append((calendar_id, remote_id, updated))
        return updated

    async def delete_event(self, calendar_id: str, remote_id: str) -> None:
        self.remote.get(calendar_id, {}).pop(remote_id, None)
        self.deleted.append((calendar_id, remote_id))


class FakeCalendarClient(CalendarClient):
    """Hands out one shared ``FakeCalendarSession`` and records token use."""

    def __init__(self, session: FakeCalendarSession) -> None:
        self.session = session
        self.granted = TokenPair(
            access_token="ya29.granted",
            refresh_token="1//granted-refresh",
            expires_at=FIXED_NOW + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar",
        )
        self.exchange_error: ProviderError | None = None
        self.exchanged_codes: list[str] = []
        self.session_tokens: list[TokenPair] = []
        self.on_refresh: TokenRefreshCallback | None = None

    def auth_url(self, state: str) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> TokenPair:
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.granted

    def with_tokens(
        self, tokens: TokenPair, *, on_refresh: TokenRefreshCallback | None = None
    ) -> FakeCalendarSession:
        self.session_tokens.append(tokens)
        self.on_refresh = on_refresh
        return self.session


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_remote(
    remote_id: str,
    start: datetime,
    *,
    hours: int = 1,
    summary: str | None = None,
    time_zone: str | None = None,
) -> RemoteEvent:
    return RemoteEvent(
        id=remote_id,
        summary=summary or f"Remote {remote_id}",
        start=EventBoundary(date_time=start, time_zone=time_zone),
        end=EventBoundary(date_time=start + timedelta(hours=hours), time_zone=time_zone),
    )


def make_local(
    summary: str,
    start: datetime,
    *,
    user_id: str = USER_ID,
    hours: int = 1,
    **extra: Any,
) -> LocalEvent:
    return LocalEvent(
        user_id=user_id,
        summary=summary,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        **extra,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def token_store() -> FakeTokenStore:
    return FakeTokenStore()


@pytest.fixture
def event_store() -> FakeEventStore:
    return FakeEventStore()


@pytest.fixture
def google_session() -> FakeCalendarSession:
    session = FakeCalendarSession()
    session.add_calendar(
        CalendarRef(id=CALENDAR_ID, summary="Gigs", time_zone="Europe/Berlin", primary=True)
    )
    return session


@pytest.fixture
def google_client(google_session: FakeCalendarSession) -> FakeCalendarClient:
    return FakeCalendarClient(google_session)


@pytest.fixture
def engine(
    token_store: FakeTokenStore,
    event_store: FakeEventStore,
    google_client: FakeCalendarClient,
) -> SyncEngine:
    return SyncEngine(
        token_store,  # type: ignore[arg-type]
        event_store,  # type: ignore[arg-type]
        google_client,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def connected_user(token_store: FakeTokenStore, google_client: FakeCalendarClient) -> str:
    """A user with stored tokens, the fake primary calendar and daily sync."""
    token_store.rows[USER_ID] = SyncSettings(
        user_id=USER_ID,
        frequency=SyncFrequency.daily,
        next_sync=FIXED_NOW - timedelta(minutes=5),
        default_calendar_id=CALENDAR_ID,
        tokens=google_client.granted,
    )
    return USER_ID

