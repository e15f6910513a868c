"""Sync preference endpoints — ``/api/settings/sync``."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calcalc.api.deps import CallerIdentity, get_caller, get_token_store
from calcalc.api.models import ApiResponse
from calcalc.api.models.sync import SyncSettingsRequest, SyncSettingsView
from calcalc.sync.models import SyncSettingsUpdate
from calcalc.sync.token_store import TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/sync", response_model=ApiResponse[SyncSettingsView])
async def get_sync_settings(
    caller: CallerIdentity = Depends(get_caller),
    tokens: TokenStore = Depends(get_token_store),
) -> ApiResponse[SyncSettingsView]:
    """Return the caller's sync preferences.

    A user who never connected gets the defaults with ``is_connected=false``
    rather than a 404.
    """
    settings = await tokens.get(caller.user_id)
    return ApiResponse[SyncSettingsView](data=SyncSettingsView.from_settings(settings))


@router.post("/sync", response_model=ApiResponse[SyncSettingsView])
async def update_sync_settings(
    body: SyncSettingsRequest,
    caller: CallerIdentity = Depends(get_caller),
    tokens: TokenStore = Depends(get_token_store),
) -> ApiResponse[SyncSettingsView]:
    """Change direction and/or frequency; ``next_sync`` is recomputed server-side."""
    changes = {}
    if body.sync_direction is not None:
        changes["direction"] = body.sync_direction
    if body.sync_frequency is not None:
        changes["frequency"] = body.sync_frequency
    settings = await tokens.upsert(caller.user_id, SyncSettingsUpdate(**changes))
    return ApiResponse[SyncSettingsView](data=SyncSettingsView.from_settings(settings))
