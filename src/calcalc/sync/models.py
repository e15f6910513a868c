"""Domain models shared by the sync components.

``RemoteEvent`` mirrors a Google Calendar v3 event; ``LocalEvent`` mirrors a
row of the ``events`` table; ``SyncSettings`` mirrors a ``user_settings`` row.
"""

from __future__ import annotations

import datetime as dt
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SyncDirection(StrEnum):
    """Which phases a sync runs."""

    import_ = "import"
    export = "export"
    both = "both"

    @property
    def imports(self) -> bool:
        return self in (SyncDirection.import_, SyncDirection.both)

    @property
    def exports(self) -> bool:
        return self in (SyncDirection.export, SyncDirection.both)


class SyncFrequency(StrEnum):
    """Automatic sync cadence."""

    manual = "manual"
    hourly = "hourly"
    daily = "daily"
    weekly = "weekly"


FREQUENCY_INTERVALS: dict[SyncFrequency, timedelta | None] = {
    SyncFrequency.manual: None,
    SyncFrequency.hourly: timedelta(hours=1),
    SyncFrequency.daily: timedelta(days=1),
    SyncFrequency.weekly: timedelta(weeks=1),
}


def next_sync_after(frequency: SyncFrequency, anchor: datetime) -> datetime | None:
    """Return the next due time for *frequency* measured from *anchor*.

    ``manual`` never comes due, so it yields ``None``.
    """
    interval = FREQUENCY_INTERVALS[SyncFrequency(frequency)]
    if interval is None:
        return None
    return anchor + interval


class EventStatus(StrEnum):
    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


class Transparency(StrEnum):
    opaque = "opaque"
    transparent = "transparent"


class AttendeeResponseStatus(StrEnum):
    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class SyncPhase(StrEnum):
    """Reconciliation state machine phases."""

    idle = "idle"
    importing = "importing"
    exporting = "exporting"
    finalizing = "finalizing"


# ---------------------------------------------------------------------------
# Provider-side models
# ---------------------------------------------------------------------------


class Attendee(BaseModel):
    """An event attendee as exchanged with Google."""

    model_config = ConfigDict(extra="forbid")

    email: str
    display_name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action


class EventBoundary(BaseModel):
    """One end of an event: either a precise instant or a whole date.

    Exactly one of ``date_time`` and ``date`` is set.  ``time_zone`` names the
    IANA zone the instant is expressed in and is normally absent for dates.
    """

    model_config = ConfigDict(extra="forbid")

    date_time: datetime | None = None
    date: dt.date | None = None
    time_zone: str | None = None

    @model_validator(mode="after")
    def _exactly_one_value(self) -> EventBoundary:
        if (self.date_time is None) == (self.date is None):
            raise ValueError("an event boundary needs exactly one of date_time or date")
        if self.date_time is not None and self.date_time.tzinfo is None:
            raise ValueError("date_time must be timezone-aware")
        return self

    @property
    def is_date_only(self) -> bool:
        return self.date is not None


class RemoteEvent(BaseModel):
    """Google Calendar event representation."""

    id: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: EventBoundary | None = None
    end: EventBoundary | None = None
    status: EventStatus | None = None
    transparency: Transparency | None = None
    created: datetime | None = None
    updated: datetime | None = None
    sequence: int = 0
    recurrence: list[str] | None = None
    attendees: list[Attendee] | None = None
    recurring_event_id: str | None = None


class CalendarRef(BaseModel):
    """A remote calendar visible to the connected account."""

    id: str
    summary: str | None = None
    time_zone: str | None = None
    primary: bool = False
    access_role: str | None = None


class TokenPair(BaseModel):
    """OAuth tokens for one connected Google account."""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """True when the access token is absent or past its expiry."""
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def __repr__(self) -> str:
        # Token values never appear in reprs or logs.
        return f"TokenPair(expires_at={self.expires_at!r}, scope={self.scope!r})"

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Local models
# ---------------------------------------------------------------------------


def _new_event_id() -> str:
    return str(uuid.uuid4())


class LocalEvent(BaseModel):
    """A row of the local ``events`` table."""

    event_id: str = Field(default_factory=_new_event_id)
    user_id: str
    calendar_id: str | None = None
    summary: str = ""
    description: str = ""
    location: str = ""
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    timezone_id: str = "UTC"
    status: EventStatus = EventStatus.confirmed
    transparency: Transparency = Transparency.opaque
    sequence: int = 0
    recurring_id: str | None = None
    recurrence: list[str] | None = None
    attendees: list[Attendee] | None = None
    google_id: str | None = None
    google_calendar_id: str | None = None
    income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _linkage_is_all_or_nothing(self) -> LocalEvent:
        if (self.google_id is None) != (self.google_calendar_id is None):
            raise ValueError("google_id and google_calendar_id must be set together")
        return self

    @property
    def is_linked(self) -> bool:
        return self.google_id is not None


class SyncSettings(BaseModel):
    """Per-user sync preferences and OAuth tokens (one ``user_settings`` row)."""

    user_id: str
    direction: SyncDirection = SyncDirection.both
    frequency: SyncFrequency = SyncFrequency.daily
    last_sync: datetime | None = None
    next_sync: datetime | None = None
    default_calendar_id: str | None = None
    tokens: TokenPair = Field(default_factory=TokenPair)

    @property
    def has_tokens(self) -> bool:
        return bool(self.tokens.access_token or self.tokens.refresh_token)

    @property
    def is_connected(self) -> bool:
        return self.has_tokens and bool(self.default_calendar_id)


class SyncSettingsUpdate(BaseModel):
    """Partial settings update; only explicitly set fields are written."""

    model_config = ConfigDict(extra="forbid")

    direction: SyncDirection | None = None
    frequency: SyncFrequency | None = None
    default_calendar_id: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class SyncItemError(BaseModel):
    """A failure attributed to one local event, remote event, or calendar."""

    kind: str  # "local" | "remote" | "calendar"
    ref: str | None = None
    message: str


class SyncResult(BaseModel):
    """Outcome of one reconcile call."""

    user_id: str
    direction: SyncDirection
    imported: int = 0
    exported: int = 0
    updated: int = 0
    errors: list[SyncItemError] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None
    last_sync: datetime | None = None
    next_sync: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> str:
        return "partial" if self.errors else "success"

    def add_error(self, kind: str, ref: str | None, message: str) -> None:
        self.errors.append(SyncItemError(kind=kind, ref=ref, message=message))
