"""Google Calendar connection and sync endpoints.

The connection flow:
  1. GET /api/google/auth-url
     - Generates a one-time state token bound to the caller (10 min TTL).
     - Returns the Google consent URL and the state as JSON.

  2. GET /api/google/callback
     - Validates and consumes the state, recovering the user it was issued to.
     - Exchanges the authorization code, picks the primary calendar as the
       default and persists the token pair.
     - Runs an initial import, then redirects to the frontend (when
       ``api.frontend_url`` is set) or returns a JSON payload.

Sync triggers (``/sync``, ``/import``, ``/export``) are thin adapters over
``SyncEngine.reconcile``; all sync semantics live in the engine.

Security notes:
  - State tokens are one-time-use and tied to the user who requested them.
  - Token values are never returned or logged.
  - Provider error codes are mapped to fixed messages before being echoed.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from calcalc.api.deps import (
    CallerIdentity,
    get_calendar_client,
    get_caller,
    get_config,
    get_engine,
    get_token_store,
)
from calcalc.api.models import ApiResponse
from calcalc.api.models.sync import (
    AuthUrlResponse,
    DefaultCalendarRequest,
    ExportRequest,
    OAuthCallbackError,
    OAuthCallbackSuccess,
    SyncSettingsView,
)
from calcalc.config import CalcalcConfig
from calcalc.sync.engine import SyncEngine
from calcalc.sync.errors import NotConnectedError, ProviderError, SyncError
from calcalc.sync.models import (
    CalendarRef,
    SyncDirection,
    SyncResult,
    SyncSettingsUpdate,
    TokenPair,
)
from calcalc.sync.provider import CalendarClient
from calcalc.sync.token_store import TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google", tags=["google"])

# ---------------------------------------------------------------------------
# In-memory OAuth state store
# State entries expire after 10 minutes.
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600  # 10 minutes


@dataclass(frozen=True)
class _PendingState:
    user_id: str
    expires_at: float


# Maps state token → pending authorization (monotonic expiry)
# NOTE: This store is process-local. Do not run multiple worker processes
# (e.g. gunicorn -w N); state validation will fail across workers.
_state_store: dict[str, _PendingState] = {}


def _generate_state() -> str:
    """Generate a cryptographically random state token."""
    return secrets.token_urlsafe(32)


def _store_state(state: str, user_id: str) -> None:
    """Remember which user a state token was issued to."""
    _state_store[state] = _PendingState(
        user_id=user_id, expires_at=time.monotonic() + _STATE_TTL_SECONDS
    )
    _evict_expired_states()


def _validate_and_consume_state(state: str) -> str | None:
    """Validate a state token and consume it (one-time-use).

    Returns the user id the state was issued to, or None when the state is
    unknown or expired.
    """
    _evict_expired_states()
    pending = _state_store.pop(state, None)
    if pending is None or time.monotonic() >= pending.expires_at:
        return None
    return pending.user_id


def _evict_expired_states() -> None:
    """Remove all expired state tokens from the store."""
    now = time.monotonic()
    expired = [k for k, pending in _state_store.items() if now >= pending.expires_at]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


# ---------------------------------------------------------------------------
# Provider error sanitization
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "Access to Google Calendar was denied. Connection cancelled.",
    "invalid_request": "The authorization request was malformed. Please try connecting again.",
    "unauthorized_client": "This application is not authorized to use Google OAuth. "
    "Check the Google client configuration.",
    "invalid_scope": "The requested Google Calendar permissions were not granted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google sign-in is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    """Convert a provider error code into a safe, actionable user message.

    Unknown error codes are replaced with a generic message to avoid
    leaking internal provider state.
    """
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "Google authorization failed. Please try connecting again.",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _frontend_callback_url(config: CalcalcConfig, **params: str) -> str | None:
    base = config.api.frontend_url
    if not base:
        return None
    return f"{base.rstrip('/')}/auth/google/callback?{urlencode(params)}"


def _callback_failure(
    config: CalcalcConfig, error_code: str, message: str, status_code: int = 400
) -> Response:
    redirect_url = _frontend_callback_url(config, syncSuccess="false", error=error_code)
    if redirect_url:
        return RedirectResponse(url=redirect_url, status_code=302)
    payload = OAuthCallbackError(error_code=error_code, message=message)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


def _pick_default_calendar(calendars: list[CalendarRef]) -> CalendarRef | None:
    """The primary calendar if Google marks one, else the first listed."""
    for calendar in calendars:
        if calendar.primary:
            return calendar
    return calendars[0] if calendars else None


def _require_google_configured(config: CalcalcConfig) -> None:
    if not config.google.is_configured:
        raise HTTPException(
            status_code=503,
            detail="Google OAuth client credentials are not configured.",
        )


# ---------------------------------------------------------------------------
# Connection flow
# ---------------------------------------------------------------------------


@router.get("/auth-url", response_model=AuthUrlResponse)
async def google_auth_url(
    caller: CallerIdentity = Depends(get_caller),
    config: CalcalcConfig = Depends(get_config),
    client: CalendarClient = Depends(get_calendar_client),
) -> AuthUrlResponse:
    """Return the Google consent URL for the calling user."""
    _require_google_configured(config)
    state = _generate_state()
    _store_state(state, caller.user_id)
    logger.info("Google connection started (state=%s...)", state[:8])
    return AuthUrlResponse(url=client.auth_url(state), state=state)


@router.get(
    "/callback",
    responses={
        200: {"model": OAuthCallbackSuccess, "description": "JSON payload (no frontend URL)"},
        302: {"description": "Redirect to the frontend callback page"},
    },
)
async def google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="State token from /auth-url."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    config: CalcalcConfig = Depends(get_config),
    client: CalendarClient = Depends(get_calendar_client),
    tokens: TokenStore = Depends(get_token_store),
    engine: SyncEngine = Depends(get_engine),
) -> Response:
    """Complete the connection: store tokens, pick a calendar, import once.

    The caller is identified by the state token rather than the identity
    header, since Google redirects the browser here directly.
    """
    # --- Handle provider-side errors (e.g. user denied consent) ---
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        # Consume the state token if provided to prevent reuse after a denied flow.
        if state:
            _validate_and_consume_state(state)
        return _callback_failure(config, "provider_error", _sanitize_provider_error(error))

    if not code:
        return _callback_failure(
            config, "missing_code", "Authorization code is missing from the callback."
        )
    if not state:
        return _callback_failure(
            config, "missing_state", "State parameter is missing from the callback."
        )

    user_id = _validate_and_consume_state(state)
    if user_id is None:
        logger.warning("Google callback received invalid or expired state token")
        return _callback_failure(
            config,
            "invalid_state",
            "State parameter is invalid or expired. Please try connecting again.",
        )

    try:
        granted = await client.exchange_code(code)
    except ProviderError as exc:
        logger.warning("Google token exchange failed: %s", exc)
        return _callback_failure(
            config,
            "token_exchange_failed",
            "Failed to exchange the authorization code. "
            "The code may have expired or already been used. Please try connecting again.",
        )

    session = client.with_tokens(granted)
    default_calendar: CalendarRef | None = None
    try:
        default_calendar = _pick_default_calendar(await session.list_calendars())
    except ProviderError as exc:
        logger.warning("Listing calendars after connect failed: %s", exc)

    await tokens.store_tokens(
        user_id,
        granted,
        default_calendar_id=default_calendar.id if default_calendar else None,
        initial_frequency=config.sync.initial_frequency,
    )
    logger.info("Google Calendar connected (default calendar=%s)", default_calendar)

    initial_import = False
    imported = 0
    if default_calendar is not None:
        try:
            result = await engine.reconcile(user_id, direction=SyncDirection.import_)
        except SyncError as exc:
            logger.warning("Initial import after connect failed: %s", exc)
        else:
            initial_import = True
            imported = result.imported

    redirect_url = _frontend_callback_url(config, syncSuccess="true")
    if redirect_url:
        return RedirectResponse(url=redirect_url, status_code=302)

    payload = OAuthCallbackSuccess(
        default_calendar_id=default_calendar.id if default_calendar else None,
        initial_import=initial_import,
        imported=imported,
    )
    return JSONResponse(content=payload.model_dump())


# ---------------------------------------------------------------------------
# Sync triggers
# ---------------------------------------------------------------------------


@router.post("/sync", response_model=ApiResponse[SyncResult])
async def google_sync(
    caller: CallerIdentity = Depends(get_caller),
    engine: SyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Reconcile using the caller's stored direction."""
    result = await engine.reconcile(caller.user_id)
    return ApiResponse[SyncResult](data=result)


@router.post("/import", response_model=ApiResponse[SyncResult])
async def google_import(
    caller: CallerIdentity = Depends(get_caller),
    engine: SyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    result = await engine.reconcile(caller.user_id, direction=SyncDirection.import_)
    return ApiResponse[SyncResult](data=result)


@router.post("/export", response_model=ApiResponse[SyncResult])
async def google_export(
    body: ExportRequest | None = Body(default=None),
    caller: CallerIdentity = Depends(get_caller),
    engine: SyncEngine = Depends(get_engine),
) -> ApiResponse[SyncResult]:
    """Push local events; without ``event_ids`` every unlinked event is exported."""
    event_ids = body.event_ids if body is not None else None
    result = await engine.reconcile(
        caller.user_id, direction=SyncDirection.export, event_ids=event_ids
    )
    return ApiResponse[SyncResult](data=result)


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


@router.get("/calendars", response_model=ApiResponse[list[CalendarRef]])
async def google_calendars(
    caller: CallerIdentity = Depends(get_caller),
    client: CalendarClient = Depends(get_calendar_client),
    tokens: TokenStore = Depends(get_token_store),
) -> ApiResponse[list[CalendarRef]]:
    """List the calendars visible to the caller's Google account."""
    settings = await tokens.get(caller.user_id)
    if settings is None or not settings.has_tokens:
        raise NotConnectedError(caller.user_id)

    async def _persist(pair: TokenPair) -> None:
        await tokens.update_tokens(caller.user_id, pair)

    session = client.with_tokens(settings.tokens, on_refresh=_persist)
    calendars = await session.list_calendars()
    return ApiResponse[list[CalendarRef]](data=calendars)


@router.put("/default-calendar", response_model=ApiResponse[SyncSettingsView])
async def google_default_calendar(
    body: DefaultCalendarRequest,
    caller: CallerIdentity = Depends(get_caller),
    tokens: TokenStore = Depends(get_token_store),
) -> ApiResponse[SyncSettingsView]:
    """Choose which Google calendar sync targets."""
    settings = await tokens.get(caller.user_id)
    if settings is None or not settings.has_tokens:
        raise NotConnectedError(caller.user_id)
    updated = await tokens.upsert(
        caller.user_id, SyncSettingsUpdate(default_calendar_id=body.calendar_id)
    )
    return ApiResponse[SyncSettingsView](data=SyncSettingsView.from_settings(updated))
