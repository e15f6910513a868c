"""Periodic sync trigger.

At each tick, users whose ``next_sync`` has passed are reconciled one after
another with their stored direction.  One user's failure is logged and
never blocks the rest.  Ticks fire on a croniter cadence (every 15 minutes
by default).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from croniter import croniter
from opentelemetry import trace

from calcalc.config import DEFAULT_TICK_CRON
from calcalc.sync.engine import SyncEngine
from calcalc.sync.errors import SyncInProgressError
from calcalc.sync.token_store import TokenStore

logger = logging.getLogger(__name__)


def next_tick_after(cron: str, now: datetime) -> datetime:
    """Return the first cron occurrence strictly after *now* (UTC)."""
    return croniter(cron, now).get_next(datetime).replace(tzinfo=UTC)


class SyncScheduler:
    """Drives ``SyncEngine.reconcile`` for every due user."""

    def __init__(
        self,
        engine: SyncEngine,
        tokens: TokenStore,
        *,
        tick_cron: str = DEFAULT_TICK_CRON,
    ) -> None:
        if not croniter.is_valid(tick_cron):
            raise ValueError(f"Invalid cron expression: {tick_cron!r}")
        self._engine = engine
        self._tokens = tokens
        self._tick_cron = tick_cron
        self._stop_event = asyncio.Event()

    async def tick(self, now: datetime | None = None) -> int:
        """Reconcile every due user once.

        Creates a ``calcalc.sync_tick`` span with attributes ``users_due``
        and ``users_synced``.

        Returns:
            The number of users whose sync completed.
        """
        tracer = trace.get_tracer("calcalc")
        with tracer.start_as_current_span("calcalc.sync_tick") as span:
            now = now or datetime.now(UTC)
            due = await self._tokens.list_due(now)
            span.set_attribute("users_due", len(due))

            synced = 0
            for user_id in due:
                try:
                    result = await self._engine.reconcile(user_id)
                except SyncInProgressError:
                    logger.info("Skipping user %s: a sync is already running", user_id)
                    continue
                except Exception:
                    logger.exception("Scheduled sync failed for user %s", user_id)
                    await self._reschedule(user_id, now)
                    continue
                synced += 1
                logger.info(
                    "Scheduled sync for user %s finished (status=%s, next_sync=%s)",
                    user_id,
                    result.status,
                    result.next_sync,
                )

            span.set_attribute("users_synced", synced)
            return synced

    async def _reschedule(self, user_id: str, now: datetime) -> None:
        # A failed user must not be reselected on every tick
        try:
            await self._tokens.reschedule(user_id, now)
        except Exception:
            logger.exception("Could not reschedule user %s after a failed sync", user_id)

    async def run(self) -> None:
        """Tick on the cron cadence until :meth:`stop` is called.

        A tick in progress is allowed to finish; stop only prevents the next one.
        """
        self._stop_event.clear()
        logger.info("Sync scheduler started (cron=%s)", self._tick_cron)
        while not self._stop_event.is_set():
            now = datetime.now(UTC)
            delay = (next_tick_after(self._tick_cron, now) - now).total_seconds()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=max(delay, 0.0))
                break
            except TimeoutError:
                pass
            try:
                await self.tick()
            except Exception:
                logger.exception("Sync scheduler tick failed")
        logger.info("Sync scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()
