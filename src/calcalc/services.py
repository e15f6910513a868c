"""Assembly of the sync components around one database handle."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from calcalc.config import CalcalcConfig
from calcalc.db import Database
from calcalc.sync.engine import SyncEngine
from calcalc.sync.event_store import EventStore
from calcalc.sync.provider import CalendarClient, GoogleCalendarClient
from calcalc.sync.scheduler import SyncScheduler
from calcalc.sync.token_store import TokenStore


@dataclass
class SyncServices:
    """Everything the API, CLI and scheduler need, built once per process."""

    config: CalcalcConfig
    db: Database
    tokens: TokenStore
    events: EventStore
    client: CalendarClient
    engine: SyncEngine
    scheduler: SyncScheduler

    @classmethod
    def build(
        cls,
        config: CalcalcConfig,
        db: Database,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> SyncServices:
        tokens = TokenStore(db)
        events = EventStore(db)
        client = GoogleCalendarClient(config.google, http_client=http_client)
        engine = SyncEngine(
            tokens,
            events,
            client,
            import_window_past=config.sync.import_window_past,
            import_window_future=config.sync.import_window_future,
        )
        scheduler = SyncScheduler(engine, tokens, tick_cron=config.scheduler.tick_cron)
        return cls(
            config=config,
            db=db,
            tokens=tokens,
            events=events,
            client=client,
            engine=engine,
            scheduler=scheduler,
        )

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.client.aclose()
        await self.db.close()
