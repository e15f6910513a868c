"""Reconciliation engine — the single entry point for every sync.

``SyncEngine.reconcile(user_id, direction, event_ids)`` is called by the
scheduler, the HTTP API and the CLI alike.  One invocation walks the phase
machine::

    idle → importing → exporting → finalizing → idle

Importing and exporting run only for the requested direction; finalizing
always runs once either was entered, stamping ``last_sync`` and
recomputing ``next_sync``.

Import runs as one transaction (calendar metadata plus every event), with
a savepoint per row so a rejected row is recorded without losing the rest.
A storage failure that breaks the transaction rolls the whole batch back.

Export treats each event as its own unit: create on Google, then link the
local row.  If linking fails the just-created remote event is deleted so
the pair never ends half done.  A failure on one event never undoes
events already exported in the same pass.

Known limitations, kept deliberately:

- No content de-duplication: an unlinked local event that matches a
  remote one is still exported.
- No deletion propagation in either direction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from opentelemetry import trace

from calcalc.core.logging import sync_user_context
from calcalc.sync.errors import (
    AuthenticationRequiredError,
    NotConnectedError,
    PersistenceError,
    ProviderError,
    RowRejectedError,
    SyncInProgressError,
)
from calcalc.sync.event_store import EventStore
from calcalc.sync.mapper import to_local, to_remote
from calcalc.sync.models import (
    CalendarRef,
    LocalEvent,
    SyncDirection,
    SyncPhase,
    SyncResult,
    TokenPair,
)
from calcalc.sync.provider import CalendarClient, CalendarSession
from calcalc.sync.token_store import TokenStore, require_connected

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncEngine:
    """Runs reconcile passes, at most one in flight per user.

    An in-process ``asyncio.Lock`` turns away a second caller in this
    process cheaply; the token store's advisory lock covers other
    processes sharing the database (a CLI sync or tick next to the server).
    """

    def __init__(
        self,
        tokens: TokenStore,
        events: EventStore,
        client: CalendarClient,
        *,
        import_window_past: timedelta | None = None,
        import_window_future: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._tokens = tokens
        self._events = events
        self._client = client
        self._import_window_past = import_window_past
        self._import_window_future = import_window_future
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._phases: dict[str, SyncPhase] = {}

    def current_phase(self, user_id: str) -> SyncPhase:
        return self._phases.get(user_id, SyncPhase.idle)

    def is_running(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    async def reconcile(
        self,
        user_id: str,
        direction: SyncDirection | str | None = None,
        event_ids: Iterable[str] | None = None,
    ) -> SyncResult:
        """Synchronize one user's default calendar.

        Parameters
        ----------
        user_id:
            Owner of the settings row and events.
        direction:
            Overrides the stored direction for this call only.
        event_ids:
            Explicit export set.  Unlinked events in it are created on
            Google; linked ones are pushed with an update.  When omitted,
            every unlinked event is exported.

        Raises
        ------
        AuthenticationRequiredError
            *user_id* is empty.
        NotConnectedError
            No tokens or no default calendar; nothing is written.
        SyncInProgressError
            Another reconcile for this user, in this or another process,
            has not finished.
        """
        if not user_id:
            raise AuthenticationRequiredError("A caller identity is required to sync")

        lock = self._locks.setdefault(user_id, asyncio.Lock())
        if lock.locked():
            raise SyncInProgressError(user_id)
        try:
            async with lock, self._tokens.sync_lock(user_id) as acquired:
                if not acquired:
                    raise SyncInProgressError(user_id)
                with sync_user_context(user_id):
                    return await self._reconcile_locked(user_id, direction, event_ids)
        finally:
            if not lock.locked():
                self._locks.pop(user_id, None)

    def _enter(self, user_id: str, phase: SyncPhase) -> None:
        previous = self._phases.get(user_id, SyncPhase.idle)
        logger.debug("Sync phase %s -> %s", previous, phase)
        if phase is SyncPhase.idle:
            self._phases.pop(user_id, None)
        else:
            self._phases[user_id] = phase

    async def _reconcile_locked(
        self,
        user_id: str,
        direction: SyncDirection | str | None,
        event_ids: Iterable[str] | None,
    ) -> SyncResult:
        tracer = trace.get_tracer("calcalc")
        with tracer.start_as_current_span("calcalc.reconcile") as span:
            settings = require_connected(await self._tokens.get(user_id), user_id)
            effective = SyncDirection(direction) if direction is not None else settings.direction
            calendar_id = settings.default_calendar_id
            if calendar_id is None:
                raise NotConnectedError(user_id)

            span.set_attribute("user_id", user_id)
            span.set_attribute("direction", str(effective))

            result = SyncResult(user_id=user_id, direction=effective, started_at=self._clock())
            session = self._client.with_tokens(
                settings.tokens,
                on_refresh=lambda tokens: self._persist_refreshed_tokens(user_id, tokens),
            )
            logger.info("Sync started (direction=%s, calendar=%s)", effective, calendar_id)

            try:
                if effective.imports:
                    self._enter(user_id, SyncPhase.importing)
                    await self._import_phase(session, user_id, calendar_id, result)
                if effective.exports:
                    self._enter(user_id, SyncPhase.exporting)
                    await self._export_phase(
                        session,
                        user_id,
                        calendar_id,
                        list(event_ids) if event_ids is not None else None,
                        result,
                    )
            finally:
                self._enter(user_id, SyncPhase.finalizing)
                try:
                    finished_at = self._clock()
                    stored = await self._tokens.mark_synced(user_id, finished_at)
                    result.finished_at = finished_at
                    result.last_sync = stored.last_sync
                    result.next_sync = stored.next_sync
                finally:
                    self._enter(user_id, SyncPhase.idle)

            span.set_attribute("imported", result.imported)
            span.set_attribute("exported", result.exported)
            span.set_attribute("updated", result.updated)
            span.set_attribute("errors", len(result.errors))
            logger.info(
                "Sync finished (status=%s, imported=%d, exported=%d, updated=%d, errors=%d)",
                result.status,
                result.imported,
                result.exported,
                result.updated,
                len(result.errors),
            )
            return result

    async def _persist_refreshed_tokens(self, user_id: str, tokens: TokenPair) -> None:
        try:
            await self._tokens.update_tokens(user_id, tokens)
        except PersistenceError:
            logger.warning("Could not persist refreshed Google token", exc_info=True)

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def _import_window(self) -> tuple[datetime | None, datetime | None]:
        now = self._clock()
        time_min = now - self._import_window_past if self._import_window_past else None
        time_max = now + self._import_window_future if self._import_window_future else None
        return time_min, time_max

    async def _import_phase(
        self,
        session: CalendarSession,
        user_id: str,
        calendar_id: str,
        result: SyncResult,
    ) -> None:
        time_min, time_max = self._import_window()
        try:
            remote_events = await session.list_events(
                calendar_id, time_min=time_min, time_max=time_max
            )
        except ProviderError as exc:
            logger.warning("Listing Google events failed: %s", exc)
            result.add_error("calendar", calendar_id, str(exc))
            return

        try:
            calendar = await session.get_calendar(calendar_id)
        except ProviderError as exc:
            logger.warning("Fetching calendar metadata failed: %s", exc)
            result.add_error("calendar", calendar_id, f"Calendar metadata unavailable: {exc}")
            calendar = CalendarRef(id=calendar_id)
        timezone = calendar.time_zone or "UTC"

        imported = 0
        try:
            async with self._events.transaction() as conn:
                await self._events.upsert_calendar(conn, user_id, calendar)
                for remote in remote_events:
                    try:
                        local = to_local(remote, calendar_id, user_id=user_id, timezone=timezone)
                        await self._events.upsert_remote_event(conn, local)
                    except (ValueError, RowRejectedError) as exc:
                        logger.warning("Skipping Google event %s: %s", remote.id, exc)
                        result.add_error("remote", remote.id, str(exc))
                        continue
                    imported += 1
        except PersistenceError as exc:
            logger.error("Import batch rolled back: %s", exc)
            result.add_error("calendar", calendar_id, f"Import rolled back: {exc}")
            imported = 0

        result.imported = imported
        logger.info("Imported %d of %d Google event(s)", imported, len(remote_events))

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def _export_candidates(
        self,
        user_id: str,
        event_ids: list[str] | None,
        result: SyncResult,
    ) -> list[LocalEvent]:
        if event_ids is None:
            return await self._events.list_unlinked(user_id)

        found = await self._events.get_events(user_id, event_ids)
        candidates: list[LocalEvent] = []
        for event_id in dict.fromkeys(event_ids):
            event = found.get(event_id)
            if event is None:
                result.add_error("local", event_id, "Event not found")
                continue
            candidates.append(event)
        return candidates

    async def _export_phase(
        self,
        session: CalendarSession,
        user_id: str,
        calendar_id: str,
        event_ids: list[str] | None,
        result: SyncResult,
    ) -> None:
        try:
            candidates = await self._export_candidates(user_id, event_ids, result)
        except PersistenceError as exc:
            logger.error("Loading export candidates failed: %s", exc)
            result.add_error("local", None, f"Export candidates unavailable: {exc}")
            return

        for event in candidates:
            if event.is_linked:
                await self._update_one(session, event, result)
            else:
                await self._export_one(session, calendar_id, event, result)

        logger.info(
            "Exported %d and updated %d of %d local event(s)",
            result.exported,
            result.updated,
            len(candidates),
        )

    async def _export_one(
        self,
        session: CalendarSession,
        calendar_id: str,
        event: LocalEvent,
        result: SyncResult,
    ) -> None:
        try:
            created = await session.create_event(calendar_id, to_remote(event))
        except (ValueError, ProviderError) as exc:
            logger.warning("Exporting event %s failed: %s", event.event_id, exc)
            result.add_error("local", event.event_id, str(exc))
            return

        if created.id is None:
            result.add_error("local", event.event_id, "Google returned the event without an id")
            return
        try:
            await self._events.link_event(event.event_id, created.id, calendar_id)
        except PersistenceError as exc:
            logger.error("Linking exported event %s failed: %s", event.event_id, exc)
            result.add_error("local", event.event_id, f"Created on Google but not linked: {exc}")
            await self._discard_remote(session, calendar_id, created.id)
            return
        result.exported += 1

    async def _update_one(
        self,
        session: CalendarSession,
        event: LocalEvent,
        result: SyncResult,
    ) -> None:
        if event.google_id is None or event.google_calendar_id is None:
            result.add_error("local", event.event_id, "Event is not linked to Google")
            return
        try:
            await session.update_event(event.google_calendar_id, event.google_id, to_remote(event))
        except (ValueError, ProviderError) as exc:
            logger.warning("Updating event %s on Google failed: %s", event.event_id, exc)
            result.add_error("local", event.event_id, str(exc))
            return
        result.updated += 1

    async def _discard_remote(
        self, session: CalendarSession, calendar_id: str, remote_id: str
    ) -> None:
        try:
            await session.delete_event(calendar_id, remote_id)
        except ProviderError as exc:
            logger.error(
                "Could not remove unlinked Google event %s from %s: %s",
                remote_id,
                calendar_id,
                exc,
            )
