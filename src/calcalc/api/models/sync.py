"""Request/response models for the Google sync and settings endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from calcalc.sync.models import SyncDirection, SyncFrequency, SyncSettings


class AuthUrlResponse(BaseModel):
    """Consent URL the browser should visit to connect Google Calendar."""

    url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    """Callback payload when no frontend URL is configured for redirects."""

    success: bool = True
    message: str = "Google Calendar connected."
    default_calendar_id: str | None = None
    initial_import: bool = False
    imported: int = 0


class OAuthCallbackError(BaseModel):
    """Error payload returned when the OAuth callback fails.

    Messages are actionable but never echo client secrets or raw provider
    error details.
    """

    success: bool = False
    error_code: str
    message: str


class ExportRequest(BaseModel):
    """Optional explicit export set for POST /api/google/export."""

    model_config = ConfigDict(extra="forbid")

    event_ids: list[str] | None = Field(
        default=None,
        description="Local event ids to push. Linked events are updated instead of created.",
    )


class DefaultCalendarRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendar_id: str = Field(min_length=1)


class SyncSettingsRequest(BaseModel):
    """Partial sync-preferences update; at least one field is required."""

    model_config = ConfigDict(extra="forbid")

    sync_direction: SyncDirection | None = None
    sync_frequency: SyncFrequency | None = None

    @model_validator(mode="after")
    def _at_least_one(self) -> SyncSettingsRequest:
        if self.sync_direction is None and self.sync_frequency is None:
            raise ValueError("Provide sync_direction and/or sync_frequency")
        return self


class SyncSettingsView(BaseModel):
    """Sync preferences as shown to the caller; never includes tokens."""

    default_calendar_id: str | None = None
    sync_direction: SyncDirection = SyncDirection.both
    sync_frequency: SyncFrequency = SyncFrequency.daily
    last_sync: datetime | None = None
    next_sync: datetime | None = None
    is_connected: bool = False

    @classmethod
    def from_settings(cls, settings: SyncSettings | None) -> SyncSettingsView:
        if settings is None:
            return cls()
        return cls(
            default_calendar_id=settings.default_calendar_id,
            sync_direction=settings.direction,
            sync_frequency=settings.frequency,
            last_sync=settings.last_sync,
            next_sync=settings.next_sync,
            is_connected=settings.is_connected,
        )
