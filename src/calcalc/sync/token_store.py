"""Per-user OAuth tokens and sync preferences (the ``user_settings`` table).

Writes are whole-row and last-writer-wins.  ``next_sync`` is always derived
here from ``frequency`` so the ``manual`` ⇔ ``NULL`` invariant holds for
every code path that touches the row.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import asyncpg

from calcalc.db import Database
from calcalc.sync.errors import NotConnectedError, SettingsNotFoundError
from calcalc.sync.models import (
    SyncDirection,
    SyncFrequency,
    SyncSettings,
    SyncSettingsUpdate,
    TokenPair,
    next_sync_after,
)

logger = logging.getLogger(__name__)

_SETTINGS_COLUMNS = """
    user_id, google_access_token, google_refresh_token, google_token_expires_at,
    google_scope, default_calendar_id, sync_direction, sync_frequency,
    last_sync, next_sync
"""

# Keyed on the user so every process sharing the database agrees on it.
_TRY_SYNC_LOCK_SQL = "SELECT pg_try_advisory_lock(hashtext($1))"
_SYNC_UNLOCK_SQL = "SELECT pg_advisory_unlock(hashtext($1))"

_WRITE_SETTINGS_SQL = """
INSERT INTO user_settings (
    user_id, google_access_token, google_refresh_token, google_token_expires_at,
    google_scope, default_calendar_id, sync_direction, sync_frequency,
    last_sync, next_sync
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
ON CONFLICT (user_id) DO UPDATE SET
    google_access_token = EXCLUDED.google_access_token,
    google_refresh_token = EXCLUDED.google_refresh_token,
    google_token_expires_at = EXCLUDED.google_token_expires_at,
    google_scope = EXCLUDED.google_scope,
    default_calendar_id = EXCLUDED.default_calendar_id,
    sync_direction = EXCLUDED.sync_direction,
    sync_frequency = EXCLUDED.sync_frequency,
    last_sync = EXCLUDED.last_sync,
    next_sync = EXCLUDED.next_sync,
    updated_at = now()
"""


def _settings_from_row(row: Any) -> SyncSettings:
    return SyncSettings(
        user_id=row["user_id"],
        direction=SyncDirection(row["sync_direction"]),
        frequency=SyncFrequency(row["sync_frequency"]),
        last_sync=row["last_sync"],
        next_sync=row["next_sync"],
        default_calendar_id=row["default_calendar_id"],
        tokens=TokenPair(
            access_token=row["google_access_token"],
            refresh_token=row["google_refresh_token"],
            expires_at=row["google_token_expires_at"],
            scope=row["google_scope"],
        ),
    )


def require_connected(settings: SyncSettings | None, user_id: str) -> SyncSettings:
    """Return *settings* when a sync can run, else raise ``NotConnectedError``."""
    if settings is None or not settings.has_tokens:
        raise NotConnectedError(user_id)
    if not settings.default_calendar_id:
        raise NotConnectedError(user_id, "No default Google calendar is selected")
    return settings


class TokenStore:
    """asyncpg-backed store for ``SyncSettings`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def _write(self, conn: asyncpg.Connection, settings: SyncSettings) -> None:
        await conn.execute(
            _WRITE_SETTINGS_SQL,
            settings.user_id,
            settings.tokens.access_token,
            settings.tokens.refresh_token,
            settings.tokens.expires_at,
            settings.tokens.scope,
            settings.default_calendar_id,
            str(settings.direction),
            str(settings.frequency),
            settings.last_sync,
            settings.next_sync,
        )

    async def _load_for_update(
        self, conn: asyncpg.Connection, user_id: str
    ) -> SyncSettings | None:
        row = await conn.fetchrow(
            f"SELECT {_SETTINGS_COLUMNS} FROM user_settings WHERE user_id = $1 FOR UPDATE",
            user_id,
        )
        return _settings_from_row(row) if row is not None else None

    async def get(self, user_id: str) -> SyncSettings | None:
        """Return the user's settings, or ``None`` when no row exists."""
        row = await self._db.fetchrow(
            f"SELECT {_SETTINGS_COLUMNS} FROM user_settings WHERE user_id = $1",
            user_id,
        )
        return _settings_from_row(row) if row is not None else None

    async def require(self, user_id: str) -> SyncSettings:
        settings = await self.get(user_id)
        if settings is None:
            raise SettingsNotFoundError(user_id)
        return settings

    async def upsert(
        self,
        user_id: str,
        update: SyncSettingsUpdate,
        *,
        now: datetime | None = None,
    ) -> SyncSettings:
        """Apply a partial update, creating the row with defaults if needed.

        Only fields explicitly set on *update* change.  Setting ``frequency``
        (or creating the row) recomputes ``next_sync`` from *now*.
        """
        now = now or datetime.now(UTC)
        changes = update.model_dump(exclude_unset=True)
        async with self._db.transaction() as conn:
            current = await self._load_for_update(conn, user_id)
            created = current is None
            settings = (current or SyncSettings(user_id=user_id)).model_copy(update=changes)
            if created or "frequency" in changes:
                settings.next_sync = next_sync_after(settings.frequency, now)
            await self._write(conn, settings)
        logger.info(
            "Sync settings %s (direction=%s, frequency=%s, next_sync=%s)",
            "created" if created else "updated",
            settings.direction,
            settings.frequency,
            settings.next_sync,
        )
        return settings

    async def store_tokens(
        self,
        user_id: str,
        tokens: TokenPair,
        *,
        default_calendar_id: str | None = None,
        initial_frequency: SyncFrequency = SyncFrequency.daily,
        now: datetime | None = None,
    ) -> SyncSettings:
        """Persist a freshly granted token pair (OAuth callback).

        A refresh token already on file is kept when Google omits one.  A
        new row starts at *initial_frequency*; an existing row keeps its
        preferences.
        """
        now = now or datetime.now(UTC)
        async with self._db.transaction() as conn:
            current = await self._load_for_update(conn, user_id)
            if current is None:
                settings = SyncSettings(
                    user_id=user_id,
                    frequency=initial_frequency,
                    next_sync=next_sync_after(initial_frequency, now),
                )
            else:
                settings = current
            refresh_token = tokens.refresh_token or settings.tokens.refresh_token
            settings = settings.model_copy(
                update={"tokens": tokens.model_copy(update={"refresh_token": refresh_token})}
            )
            if default_calendar_id is not None:
                settings.default_calendar_id = default_calendar_id
            await self._write(conn, settings)
        logger.info("Stored Google tokens (calendar=%s)", settings.default_calendar_id)
        return settings

    async def update_tokens(self, user_id: str, tokens: TokenPair) -> None:
        """Persist a refreshed access token without touching preferences."""
        await self._db.execute(
            """
            UPDATE user_settings
            SET google_access_token = $2,
                google_refresh_token = COALESCE($3, google_refresh_token),
                google_token_expires_at = $4,
                google_scope = COALESCE($5, google_scope),
                updated_at = now()
            WHERE user_id = $1
            """,
            user_id,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
            tokens.scope,
        )

    async def mark_synced(self, user_id: str, at: datetime) -> SyncSettings:
        """Stamp a completed sync: ``last_sync = at`` and ``next_sync`` from frequency."""
        async with self._db.transaction() as conn:
            current = await self._load_for_update(conn, user_id)
            if current is None:
                raise SettingsNotFoundError(user_id)
            settings = current.model_copy(
                update={"last_sync": at, "next_sync": next_sync_after(current.frequency, at)}
            )
            await self._write(conn, settings)
        return settings

    async def reschedule(self, user_id: str, at: datetime) -> None:
        """Push ``next_sync`` forward from *at* without recording a sync."""
        async with self._db.transaction() as conn:
            current = await self._load_for_update(conn, user_id)
            if current is None:
                return
            current.next_sync = next_sync_after(current.frequency, at)
            await self._write(conn, current)

    async def list_due(self, now: datetime) -> list[str]:
        """Users whose ``next_sync`` has passed and who can actually sync."""
        rows = await self._db.fetch(
            """
            SELECT user_id
            FROM user_settings
            WHERE next_sync IS NOT NULL
              AND next_sync <= $1
              AND (google_refresh_token IS NOT NULL OR google_access_token IS NOT NULL)
              AND default_calendar_id IS NOT NULL
            ORDER BY next_sync
            """,
            now,
        )
        return [row["user_id"] for row in rows]

    @asynccontextmanager
    async def sync_lock(self, user_id: str) -> AsyncIterator[bool]:
        """Try to take the user's session-level advisory lock for the block.

        Yields ``False`` without waiting when another connection, possibly in
        another process, already holds it.  The lock lives on one pooled
        connection that stays checked out until the block exits.
        """
        async with self._db.connection() as conn:
            acquired = bool(await conn.fetchval(_TRY_SYNC_LOCK_SQL, user_id))
            try:
                yield acquired
            finally:
                if acquired:
                    await self._release_sync_lock(conn, user_id)

    async def _release_sync_lock(self, conn: asyncpg.Connection, user_id: str) -> None:
        try:
            await conn.execute(_SYNC_UNLOCK_SQL, user_id)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
            # Returning the connection to the pool runs pg_advisory_unlock_all().
            logger.warning("Releasing the sync lock failed", exc_info=True)
