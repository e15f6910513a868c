"""Google OAuth and Calendar v3 client.

``GoogleCalendarClient`` handles the consent URL and code exchange;
``with_tokens`` returns a ``GoogleCalendarSession`` bound to one user's
token pair.  Every failure surfaces as ``ProviderError``; nothing here
retries.  A session renews an absent or expired access token with the
refresh grant before issuing a call and reports the new pair through
``on_refresh`` so the caller can persist it.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from calcalc.config import GoogleConfig
from calcalc.sync.errors import ProviderError
from calcalc.sync.models import (
    Attendee,
    AttendeeResponseStatus,
    CalendarRef,
    EventBoundary,
    EventStatus,
    RemoteEvent,
    TokenPair,
    Transparency,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

_PAGE_SIZE = 250
_MAX_ERROR_CHARS = 200
_DEFAULT_EXPIRES_IN_SECONDS = 3600

TokenRefreshCallback = Callable[[TokenPair], Awaitable[None]]


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:_MAX_ERROR_CHARS]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:_MAX_ERROR_CHARS]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:_MAX_ERROR_CHARS]
    return "Request failed without an error payload"


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def _token_pair_from_payload(payload: Any, *, previous: TokenPair | None = None) -> TokenPair:
    """Build a TokenPair from a token-endpoint response.

    Google omits ``refresh_token`` on refresh grants, so the previous one is
    carried forward.
    """
    if not isinstance(payload, dict):
        raise ProviderError(http_status=None, message="Token endpoint returned a non-object body")
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise ProviderError(
            http_status=None, message="Token response is missing a non-empty access_token"
        )
    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
    # Expire early to avoid edge-of-expiration failures.
    ttl = max(expires_in - 60, 30)
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        refresh_token = previous.refresh_token if previous else None
    scope = payload.get("scope")
    return TokenPair(
        access_token=access_token.strip(),
        refresh_token=refresh_token,
        expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        scope=scope if isinstance(scope, str) else (previous.scope if previous else None),
    )


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_datetime_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value)
    except ValueError:
        return None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value if value.strip() else None


# ---------------------------------------------------------------------------
# Google JSON <-> RemoteEvent
# ---------------------------------------------------------------------------


def _parse_boundary(payload: Any, *, event_id: Any) -> EventBoundary | None:
    """Parse a Google start/end object; malformed values yield ``None``."""
    if not isinstance(payload, dict):
        return None
    time_zone = _normalize_optional_text(payload.get("timeZone"))
    try:
        date_time = payload.get("dateTime")
        if isinstance(date_time, str) and date_time.strip():
            return EventBoundary(date_time=_parse_google_datetime(date_time), time_zone=time_zone)
        date_value = payload.get("date")
        if isinstance(date_value, str) and date_value.strip():
            return EventBoundary(date=date.fromisoformat(date_value.strip()), time_zone=time_zone)
    except ValueError:
        logger.warning("Ignoring malformed boundary on Google event %s", event_id)
    return None


def _parse_attendees(payload: Any) -> list[Attendee] | None:
    if not isinstance(payload, list):
        return None
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = entry.get("email")
        if not isinstance(email, str) or not email.strip():
            continue
        response_status = AttendeeResponseStatus.needs_action
        raw_status = entry.get("responseStatus")
        if isinstance(raw_status, str):
            try:
                response_status = AttendeeResponseStatus(raw_status.strip())
            except ValueError:
                pass
        display_name = entry.get("displayName")
        attendees.append(
            Attendee(
                email=email.strip(),
                display_name=display_name.strip()
                if isinstance(display_name, str) and display_name.strip()
                else None,
                response_status=response_status,
            )
        )
    return attendees


def _parse_enum(enum_cls: type, value: Any) -> Any:
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        return None


def remote_event_from_google(payload: dict[str, Any]) -> RemoteEvent:
    """Parse a Google Calendar event resource."""
    event_id = payload.get("id")
    recurrence = payload.get("recurrence")
    sequence = payload.get("sequence")
    return RemoteEvent(
        id=event_id if isinstance(event_id, str) else None,
        summary=payload.get("summary") if isinstance(payload.get("summary"), str) else None,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start=_parse_boundary(payload.get("start"), event_id=event_id),
        end=_parse_boundary(payload.get("end"), event_id=event_id),
        status=_parse_enum(EventStatus, payload.get("status")),
        transparency=_parse_enum(Transparency, payload.get("transparency")),
        created=_parse_google_datetime_optional(payload.get("created")),
        updated=_parse_google_datetime_optional(payload.get("updated")),
        sequence=sequence if isinstance(sequence, int) and not isinstance(sequence, bool) else 0,
        recurrence=[r for r in recurrence if isinstance(r, str) and r.strip()]
        if isinstance(recurrence, list)
        else None,
        attendees=_parse_attendees(payload.get("attendees")),
        recurring_event_id=_normalize_optional_text(payload.get("recurringEventId")),
    )


def _boundary_to_google(boundary: EventBoundary) -> dict[str, Any]:
    if boundary.date is not None:
        return {"date": boundary.date.isoformat()}
    if boundary.date_time is None:
        raise ValueError("Event boundary has neither a date nor a dateTime")
    body: dict[str, Any] = {"dateTime": boundary.date_time.isoformat()}
    if boundary.time_zone:
        body["timeZone"] = boundary.time_zone
    return body


def build_google_event_body(event: RemoteEvent) -> dict[str, Any]:
    """Translate a RemoteEvent into a Google Calendar API event body.

    Server-owned fields (id, created/updated, sequence, recurringEventId)
    are never sent.
    """
    if event.start is None or event.end is None:
        raise ValueError("events sent to Google need both start and end")

    body: dict[str, Any] = {
        "summary": event.summary or "",
        "start": _boundary_to_google(event.start),
        "end": _boundary_to_google(event.end),
        "status": str(event.status or EventStatus.confirmed),
        "transparency": str(event.transparency or Transparency.opaque),
    }
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.recurrence:
        body["recurrence"] = list(event.recurrence)
    if event.attendees:
        attendees = []
        for attendee in event.attendees:
            entry: dict[str, Any] = {
                "email": attendee.email,
                "responseStatus": str(attendee.response_status),
            }
            if attendee.display_name is not None:
                entry["displayName"] = attendee.display_name
            attendees.append(entry)
        body["attendees"] = attendees
    return body


def _calendar_ref_from_google(payload: dict[str, Any]) -> CalendarRef | None:
    calendar_id = payload.get("id")
    if not isinstance(calendar_id, str) or not calendar_id:
        return None
    return CalendarRef(
        id=calendar_id,
        summary=payload.get("summary") if isinstance(payload.get("summary"), str) else None,
        time_zone=_normalize_optional_text(payload.get("timeZone")),
        primary=payload.get("primary") is True,
        access_role=_normalize_optional_text(payload.get("accessRole")),
    )


# ---------------------------------------------------------------------------
# Session contract
# ---------------------------------------------------------------------------


class CalendarSession(abc.ABC):
    """Authenticated calendar operations for one connected account."""

    @abc.abstractmethod
    async def list_calendars(self) -> list[CalendarRef]:
        """Return every calendar on the account's calendar list."""
        ...

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> CalendarRef:
        """Return name and timezone metadata for one calendar."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[RemoteEvent]:
        """Return events with recurring series expanded, ordered by start time."""
        ...

    @abc.abstractmethod
    async def create_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        """Create an event; the returned copy carries the provider-assigned id."""
        ...

    @abc.abstractmethod
    async def update_event(
        self, calendar_id: str, remote_id: str, event: RemoteEvent
    ) -> RemoteEvent:
        """Overwrite the mapped fields of an existing event."""
        ...

    @abc.abstractmethod
    async def delete_event(self, calendar_id: str, remote_id: str) -> None:
        """Delete an event; deleting one that is already gone is not an error."""
        ...


class CalendarClient(abc.ABC):
    """Factory for OAuth flows and per-user calendar sessions."""

    @abc.abstractmethod
    def auth_url(self, state: str) -> str: ...

    @abc.abstractmethod
    async def exchange_code(self, code: str) -> TokenPair: ...

    @abc.abstractmethod
    def with_tokens(
        self, tokens: TokenPair, *, on_refresh: TokenRefreshCallback | None = None
    ) -> CalendarSession: ...

    async def aclose(self) -> None:  # noqa: B027
        """Release any underlying HTTP resources."""


# ---------------------------------------------------------------------------
# Google implementation
# ---------------------------------------------------------------------------


class GoogleCalendarClient(CalendarClient):
    """Google OAuth helper and session factory sharing one ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: GoogleConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    def auth_url(self, state: str) -> str:
        """Build the consent URL: offline access, calendar scopes, forced consent."""
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _post_token_endpoint(self, data: dict[str, str]) -> Any:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(
                http_status=None, message=f"Token endpoint request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                http_status=response.status_code,
                message=_safe_google_error_message(response),
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                http_status=response.status_code,
                message="Token endpoint returned invalid JSON",
            ) from exc

    async def exchange_code(self, code: str) -> TokenPair:
        """Exchange an authorization code for a token pair."""
        payload = await self._post_token_endpoint(
            {
                "code": code,
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "redirect_uri": self._config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        return _token_pair_from_payload(payload)

    async def refresh(self, tokens: TokenPair) -> TokenPair:
        """Obtain a fresh access token with the refresh grant."""
        if not tokens.refresh_token:
            raise ProviderError(
                http_status=401,
                message="Access token expired and no refresh token is stored; reconnect Google",
            )
        payload = await self._post_token_endpoint(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": tokens.refresh_token,
                "grant_type": "refresh_token",
            }
        )
        return _token_pair_from_payload(payload, previous=tokens)

    def with_tokens(
        self, tokens: TokenPair, *, on_refresh: TokenRefreshCallback | None = None
    ) -> GoogleCalendarSession:
        return GoogleCalendarSession(self, self._http_client, tokens, on_refresh=on_refresh)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class GoogleCalendarSession(CalendarSession):
    """Calendar v3 calls authorized with one user's bearer token."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        http_client: httpx.AsyncClient,
        tokens: TokenPair,
        *,
        on_refresh: TokenRefreshCallback | None = None,
    ) -> None:
        self._client = client
        self._http_client = http_client
        self._tokens = tokens
        self._on_refresh = on_refresh
        self._refresh_lock = asyncio.Lock()

    @property
    def tokens(self) -> TokenPair:
        return self._tokens

    async def _access_token(self) -> str:
        if self._tokens.is_expired(datetime.now(UTC)):
            async with self._refresh_lock:
                if self._tokens.is_expired(datetime.now(UTC)):
                    self._tokens = await self._client.refresh(self._tokens)
                    logger.info(
                        "Refreshed Google access token (expires_at=%s)", self._tokens.expires_at
                    )
                    if self._on_refresh is not None:
                        await self._on_refresh(self._tokens)

        if not self._tokens.access_token:
            raise ProviderError(http_status=None, message="No Google access token available")
        return self._tokens.access_token

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allowed_statuses: frozenset[int] = frozenset(),
    ) -> dict[str, Any]:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"
        access_token = await self._access_token()
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderError(
                http_status=None,
                message=f"Google Calendar request failed: {type(exc).__name__}",
            ) from exc

        if response.status_code in allowed_statuses or response.status_code == 204:
            return {}

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                http_status=response.status_code,
                message=_safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                http_status=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderError(
                http_status=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _paginate(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._request_google_json("GET", path, params=page_params)
            page_items = payload.get("items")
            if isinstance(page_items, list):
                items.extend(item for item in page_items if isinstance(item, dict))
            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                return items
            page_token = next_token

    async def list_calendars(self) -> list[CalendarRef]:
        items = await self._paginate("/users/me/calendarList", {"maxResults": _PAGE_SIZE})
        calendars = [_calendar_ref_from_google(item) for item in items]
        return [c for c in calendars if c is not None]

    async def get_calendar(self, calendar_id: str) -> CalendarRef:
        payload = await self._request_google_json(
            "GET", f"/calendars/{quote(calendar_id, safe='')}"
        )
        ref = _calendar_ref_from_google(payload)
        if ref is None:
            raise ProviderError(http_status=None, message="Calendar response is missing an id")
        return ref

    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": _PAGE_SIZE,
        }
        if time_min is not None:
            params["timeMin"] = _google_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = _google_rfc3339(time_max)

        items = await self._paginate(f"/calendars/{quote(calendar_id, safe='')}/events", params)
        return [remote_event_from_google(item) for item in items]

    async def create_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        payload = await self._request_google_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=build_google_event_body(event),
        )
        created = remote_event_from_google(payload)
        if not created.id:
            raise ProviderError(
                http_status=None, message="Google did not return an id for the created event"
            )
        return created

    async def update_event(
        self, calendar_id: str, remote_id: str, event: RemoteEvent
    ) -> RemoteEvent:
        payload = await self._request_google_json(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(remote_id, safe='')}",
            json_body=build_google_event_body(event),
        )
        return remote_event_from_google(payload)

    async def delete_event(self, calendar_id: str, remote_id: str) -> None:
        await self._request_google_json(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(remote_id, safe='')}",
            allowed_statuses=frozenset({404, 410}),
        )
