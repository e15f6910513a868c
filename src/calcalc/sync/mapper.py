"""Translation between Google events and local event rows.

``to_local`` and ``to_remote`` are inverses over the fields both sides
carry: for any remote event ``r``, ``to_remote(to_local(r, cid))`` keeps
r's summary, text fields, boundaries (instants or dates), status,
transparency, attendees and recurrence.  Attendees and recurrence are only
emitted when they were present on the input.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calcalc.sync.models import (
    EventBoundary,
    EventStatus,
    LocalEvent,
    RemoteEvent,
    Transparency,
)


def _known_zone(name: str | None) -> str | None:
    """Return *name* when it is an IANA zone this host knows, else ``None``."""
    if not name:
        return None
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None
    return name


def _coerce_zoneinfo(timezone: str | None) -> ZoneInfo | tzinfo:
    name = _known_zone(timezone)
    return ZoneInfo(name) if name else UTC


def _midnight(day: date, timezone: str) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=_coerce_zoneinfo(timezone))


def _boundary_to_instant(boundary: EventBoundary, timezone: str) -> datetime:
    if boundary.date_time is not None:
        return boundary.date_time
    if boundary.date is None:
        raise ValueError("Event boundary has neither a date nor a dateTime")
    return _midnight(boundary.date, timezone)


def to_local(
    remote: RemoteEvent,
    calendar_id: str,
    *,
    user_id: str,
    timezone: str = "UTC",
    event_id: str | None = None,
) -> LocalEvent:
    """Map a Google event onto a local event row linked to *calendar_id*.

    Date-only boundaries produce an all-day event whose start/end sit at
    local midnight of those dates in the event (or *timezone*) zone.  A
    zone name this host does not know is never stored; UTC stands in.
    Missing optional text becomes ``""``; only a missing start or end
    raises ``ValueError``.
    """
    if not remote.id:
        raise ValueError("Google event has no id")
    if remote.start is None or remote.end is None:
        raise ValueError(f"Google event {remote.id} is missing its start or end")

    all_day = remote.start.is_date_only and remote.end.is_date_only
    event_timezone = _known_zone(remote.start.time_zone) or _known_zone(timezone) or "UTC"

    start_time = _boundary_to_instant(remote.start, event_timezone)
    end_time = _boundary_to_instant(remote.end, event_timezone)
    if end_time < start_time:
        raise ValueError(f"Google event {remote.id} ends before it starts")

    fields: dict = {
        "user_id": user_id,
        "calendar_id": calendar_id,
        "summary": remote.summary or "",
        "description": remote.description or "",
        "location": remote.location or "",
        "start_time": start_time,
        "end_time": end_time,
        "all_day": all_day,
        "timezone_id": event_timezone,
        "status": remote.status or EventStatus.confirmed,
        "transparency": remote.transparency or Transparency.opaque,
        "sequence": remote.sequence,
        "recurring_id": remote.recurring_event_id,
        "recurrence": list(remote.recurrence) if remote.recurrence else None,
        "attendees": [a.model_copy() for a in remote.attendees] if remote.attendees else None,
        "google_id": remote.id,
        "google_calendar_id": calendar_id,
        "created_at": remote.created,
        "updated_at": remote.updated,
    }
    if event_id is not None:
        fields["event_id"] = event_id
    return LocalEvent(**fields)


def to_remote(local: LocalEvent) -> RemoteEvent:
    """Map a local event row onto a Google event body.

    All-day events emit date-only boundaries taken in the event's zone;
    timed events emit the instant expressed in that zone plus its name.
    """
    zone_name = _known_zone(local.timezone_id)
    tz = _coerce_zoneinfo(zone_name)

    if local.all_day:
        start = EventBoundary(date=local.start_time.astimezone(tz).date())
        end_day = local.end_time.astimezone(tz).date()
        if end_day <= start.date:
            # Google requires an exclusive end date after the start date
            end_day = date.fromordinal(start.date.toordinal() + 1)
        end = EventBoundary(date=end_day)
    else:
        start = EventBoundary(date_time=local.start_time.astimezone(tz), time_zone=zone_name)
        end = EventBoundary(date_time=local.end_time.astimezone(tz), time_zone=zone_name)

    return RemoteEvent(
        id=local.google_id,
        summary=local.summary,
        description=local.description or None,
        location=local.location or None,
        start=start,
        end=end,
        status=local.status,
        transparency=local.transparency,
        sequence=local.sequence,
        recurrence=list(local.recurrence) if local.recurrence else None,
        attendees=[a.model_copy() for a in local.attendees] if local.attendees else None,
        recurring_event_id=local.recurring_id,
    )
