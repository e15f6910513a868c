"""FastAPI dependencies: caller identity and the wired sync services.

The service getters are stubs until ``wire_dependencies()`` installs
overrides at startup (or a test installs its own).  An unwired getter
raises ``PersistenceError`` so endpoints answer 503 instead of crashing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Request

from calcalc.config import CalcalcConfig, load_config
from calcalc.sync.engine import SyncEngine
from calcalc.sync.errors import AuthenticationRequiredError, PersistenceError
from calcalc.sync.provider import CalendarClient
from calcalc.sync.token_store import TokenStore

if TYPE_CHECKING:
    from fastapi import FastAPI

    from calcalc.services import SyncServices

logger = logging.getLogger(__name__)

_MAX_USER_ID_LENGTH = 128


@dataclass(frozen=True)
class CallerIdentity:
    """The authenticated user making the request."""

    user_id: str


def get_config(request: Request) -> CalcalcConfig:
    config = getattr(request.app.state, "config", None)
    if config is None:
        config = load_config()
        request.app.state.config = config
    return config


def get_caller(request: Request) -> CallerIdentity:
    """Resolve the caller from the identity header set by the auth gateway.

    There is no anonymous fallback: a missing or malformed identity is a
    hard 401.
    """
    header_name = get_config(request).api.identity_header
    raw = request.headers.get(header_name, "").strip()
    if not raw:
        raise AuthenticationRequiredError("Authentication required")
    if len(raw) > _MAX_USER_ID_LENGTH or not raw.isprintable():
        raise AuthenticationRequiredError("Invalid caller identity")
    return CallerIdentity(user_id=raw)


# ---------------------------------------------------------------------------
# Service stubs (replaced by wire_dependencies)
# ---------------------------------------------------------------------------


def _not_wired(name: str) -> PersistenceError:
    return PersistenceError(f"{name} is unavailable: the database is not connected")


def get_token_store() -> TokenStore:
    raise _not_wired("Token store")


def get_engine() -> SyncEngine:
    raise _not_wired("Sync engine")


def get_calendar_client() -> CalendarClient:
    raise _not_wired("Google client")


def wire_dependencies(app: FastAPI, services: SyncServices) -> None:
    """Point the service getters at *services* for every router."""
    app.state.services = services
    app.dependency_overrides[get_token_store] = lambda: services.tokens
    app.dependency_overrides[get_engine] = lambda: services.engine
    app.dependency_overrides[get_calendar_client] = lambda: services.client
    logger.info("Sync service dependencies wired")
