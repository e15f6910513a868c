"""Unit tests for TokenStore against a mocked Database handle."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from calcalc.sync.errors import NotConnectedError, SettingsNotFoundError
from calcalc.sync.models import (
    SyncDirection,
    SyncFrequency,
    SyncSettings,
    SyncSettingsUpdate,
    TokenPair,
    next_sync_after,
)
from calcalc.sync.token_store import TokenStore, require_connected

pytestmark = pytest.mark.unit

NOW = datetime(2025, 4, 1, 9, 0, tzinfo=UTC)

# Positional layout of the whole-row write
_ACCESS, _REFRESH, _EXPIRES, _SCOPE = 2, 3, 4, 5
_CALENDAR, _DIRECTION, _FREQUENCY, _LAST_SYNC, _NEXT_SYNC = 6, 7, 8, 9, 10


def _row(**overrides: Any) -> dict[str, Any]:
    row = {
        "user_id": "u1",
        "google_access_token": "tok",
        "google_refresh_token": "rtok",
        "google_token_expires_at": NOW + timedelta(hours=1),
        "google_scope": "https://www.googleapis.com/auth/calendar",
        "default_calendar_id": "primary",
        "sync_direction": "both",
        "sync_frequency": "daily",
        "last_sync": None,
        "next_sync": NOW + timedelta(hours=5),
    }
    row.update(overrides)
    return row


def _make_db(row: dict[str, Any] | None = None) -> tuple[MagicMock, MagicMock]:
    conn = MagicMock()
    conn.fetchrow = AsyncMock(return_value=row)
    conn.execute = AsyncMock(return_value="INSERT 0 1")

    @asynccontextmanager
    async def _transaction():
        yield conn

    db = MagicMock()
    db.transaction = _transaction
    db.connection = _transaction
    db.fetchrow = AsyncMock(return_value=row)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    return db, conn


def _written(conn: MagicMock) -> tuple:
    assert conn.execute.await_count == 1
    return conn.execute.await_args.args


# ---------------------------------------------------------------------------
# next_sync_after
# ---------------------------------------------------------------------------


class TestNextSyncAfter:
    @pytest.mark.parametrize(
        ("frequency", "expected"),
        [
            (SyncFrequency.hourly, NOW + timedelta(hours=1)),
            (SyncFrequency.daily, NOW + timedelta(days=1)),
            (SyncFrequency.weekly, NOW + timedelta(weeks=1)),
            (SyncFrequency.manual, None),
        ],
    )
    def test_intervals(self, frequency, expected):
        assert next_sync_after(frequency, NOW) == expected

    def test_accepts_raw_strings(self):
        assert next_sync_after("hourly", NOW) == NOW + timedelta(hours=1)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    async def test_get_maps_row(self):
        db, _ = _make_db(_row())
        settings = await TokenStore(db).get("u1")

        assert settings is not None
        assert settings.direction is SyncDirection.both
        assert settings.frequency is SyncFrequency.daily
        assert settings.tokens.refresh_token == "rtok"
        assert settings.is_connected

    async def test_get_missing_returns_none(self):
        db, _ = _make_db(None)
        assert await TokenStore(db).get("nobody") is None

    async def test_require_missing_raises(self):
        db, _ = _make_db(None)
        with pytest.raises(SettingsNotFoundError):
            await TokenStore(db).require("nobody")

    async def test_list_due_passes_now(self):
        db, _ = _make_db()
        db.fetch.return_value = [{"user_id": "a"}, {"user_id": "b"}]

        due = await TokenStore(db).list_due(NOW)

        assert due == ["a", "b"]
        sql, now_arg = db.fetch.await_args.args
        assert now_arg == NOW
        assert "next_sync <= $1" in sql
        assert "default_calendar_id IS NOT NULL" in sql


# ---------------------------------------------------------------------------
# Preference writes
# ---------------------------------------------------------------------------


class TestUpsert:
    async def test_creates_row_with_defaults(self):
        db, conn = _make_db(None)

        settings = await TokenStore(db).upsert("u1", SyncSettingsUpdate(), now=NOW)

        args = _written(conn)
        assert args[_DIRECTION] == "both"
        assert args[_FREQUENCY] == "daily"
        assert args[_NEXT_SYNC] == NOW + timedelta(days=1)
        assert settings.next_sync == NOW + timedelta(days=1)
        assert "FOR UPDATE" in conn.fetchrow.await_args.args[0]

    async def test_frequency_change_recomputes_next_sync(self):
        db, conn = _make_db(_row())

        await TokenStore(db).upsert(
            "u1", SyncSettingsUpdate(frequency=SyncFrequency.hourly), now=NOW
        )

        args = _written(conn)
        assert args[_FREQUENCY] == "hourly"
        assert args[_NEXT_SYNC] == NOW + timedelta(hours=1)
        assert args[_DIRECTION] == "both"

    async def test_manual_clears_next_sync(self):
        db, conn = _make_db(_row())

        settings = await TokenStore(db).upsert(
            "u1", SyncSettingsUpdate(frequency=SyncFrequency.manual), now=NOW
        )

        assert _written(conn)[_NEXT_SYNC] is None
        assert settings.next_sync is None

    async def test_direction_only_keeps_schedule_and_tokens(self):
        db, conn = _make_db(_row())

        await TokenStore(db).upsert(
            "u1", SyncSettingsUpdate(direction=SyncDirection.export), now=NOW
        )

        args = _written(conn)
        assert args[_DIRECTION] == "export"
        assert args[_NEXT_SYNC] == NOW + timedelta(hours=5)
        assert args[_ACCESS] == "tok"
        assert args[_REFRESH] == "rtok"


# ---------------------------------------------------------------------------
# Token writes
# ---------------------------------------------------------------------------


class TestTokens:
    async def test_store_tokens_on_new_row_uses_initial_frequency(self):
        db, conn = _make_db(None)
        tokens = TokenPair(access_token="a1", refresh_token="r1", expires_at=NOW)

        settings = await TokenStore(db).store_tokens(
            "u1",
            tokens,
            default_calendar_id="primary",
            initial_frequency=SyncFrequency.weekly,
            now=NOW,
        )

        args = _written(conn)
        assert args[_ACCESS] == "a1"
        assert args[_REFRESH] == "r1"
        assert args[_CALENDAR] == "primary"
        assert args[_FREQUENCY] == "weekly"
        assert args[_NEXT_SYNC] == NOW + timedelta(weeks=1)
        assert settings.is_connected

    async def test_store_tokens_keeps_refresh_token_when_omitted(self):
        db, conn = _make_db(_row(sync_frequency="hourly"))

        await TokenStore(db).store_tokens("u1", TokenPair(access_token="a2"), now=NOW)

        args = _written(conn)
        assert args[_ACCESS] == "a2"
        assert args[_REFRESH] == "rtok"
        assert args[_CALENDAR] == "primary"
        assert args[_FREQUENCY] == "hourly"

    async def test_update_tokens_only_touches_token_columns(self):
        db, _ = _make_db()
        expires = NOW + timedelta(hours=1)

        await TokenStore(db).update_tokens("u1", TokenPair(access_token="a3", expires_at=expires))

        sql, *params = db.execute.await_args.args
        assert "sync_frequency" not in sql
        assert "COALESCE($3, google_refresh_token)" in sql
        assert params == ["u1", "a3", None, expires, None]


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class TestBookkeeping:
    async def test_mark_synced_stamps_and_schedules(self):
        db, conn = _make_db(_row())
        finished = NOW + timedelta(minutes=2)

        settings = await TokenStore(db).mark_synced("u1", finished)

        args = _written(conn)
        assert args[_LAST_SYNC] == finished
        assert args[_NEXT_SYNC] == finished + timedelta(days=1)
        assert settings.last_sync == finished

    async def test_mark_synced_missing_row_raises(self):
        db, conn = _make_db(None)
        with pytest.raises(SettingsNotFoundError):
            await TokenStore(db).mark_synced("u1", NOW)
        conn.execute.assert_not_awaited()

    async def test_reschedule_leaves_last_sync(self):
        last = NOW - timedelta(days=2)
        db, conn = _make_db(_row(last_sync=last))

        await TokenStore(db).reschedule("u1", NOW)

        args = _written(conn)
        assert args[_LAST_SYNC] == last
        assert args[_NEXT_SYNC] == NOW + timedelta(days=1)


class TestSyncLock:
    async def test_taken_lock_is_released_on_exit(self):
        db, conn = _make_db()
        conn.fetchval = AsyncMock(return_value=True)

        async with TokenStore(db).sync_lock("u1") as acquired:
            assert acquired is True
            conn.execute.assert_not_awaited()

        assert "pg_try_advisory_lock" in conn.fetchval.await_args.args[0]
        sql, user_id = conn.execute.await_args.args
        assert "pg_advisory_unlock" in sql
        assert user_id == "u1"

    async def test_contended_lock_is_not_released(self):
        db, conn = _make_db()
        conn.fetchval = AsyncMock(return_value=False)

        async with TokenStore(db).sync_lock("u1") as acquired:
            assert acquired is False

        conn.execute.assert_not_awaited()

    async def test_failed_release_is_logged(self, caplog):
        db, conn = _make_db()
        conn.fetchval = AsyncMock(return_value=True)
        conn.execute = AsyncMock(side_effect=OSError("connection reset"))

        with caplog.at_level("WARNING", logger="calcalc.sync.token_store"):
            async with TokenStore(db).sync_lock("u1"):
                pass

        assert "Releasing the sync lock failed" in caplog.text


# ---------------------------------------------------------------------------
# require_connected
# ---------------------------------------------------------------------------


class TestRequireConnected:
    def test_none_is_not_connected(self):
        with pytest.raises(NotConnectedError):
            require_connected(None, "u1")

    def test_without_tokens_is_not_connected(self):
        with pytest.raises(NotConnectedError):
            require_connected(SyncSettings(user_id="u1", default_calendar_id="primary"), "u1")

    def test_without_calendar_is_not_connected(self):
        settings = SyncSettings(user_id="u1", tokens=TokenPair(refresh_token="r"))
        with pytest.raises(NotConnectedError, match="default"):
            require_connected(settings, "u1")

    def test_connected_passes_through(self):
        settings = SyncSettings(
            user_id="u1", default_calendar_id="primary", tokens=TokenPair(refresh_token="r")
        )
        assert require_connected(settings, "u1") is settings
