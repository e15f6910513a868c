"""Root conftest — PostgreSQL testcontainer fixtures for integration tests.

The in-memory fakes used by unit tests live in ``tests/conftest.py``.
Integration tests share one Postgres container per session and get a
freshly provisioned database per test, so rows never leak between tests.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Iterator
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from calcalc.db import Database

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TRANSIENT_TEARDOWN_MARKERS = (
    "did not receive an exit event",
    "is already in progress",
    "no such container",
)
_STOP_RETRY_ATTEMPTS = 4
_STOP_BASE_DELAY_SECONDS = 0.1


def _is_transient_teardown_error(exc: BaseException) -> bool:
    """True for known Docker API races while force-removing a container."""
    text = f"{getattr(exc, 'explanation', '') or ''} {exc}".lower()
    return any(marker in text for marker in _TRANSIENT_TEARDOWN_MARKERS)


def _patch_testcontainers_stop_with_retry() -> None:
    """Patch testcontainers stop() to tolerate transient Docker daemon races."""
    try:
        from testcontainers.core.container import DockerContainer
    except ImportError:
        return

    if getattr(DockerContainer.stop, "_calcalc_retry_patch", False):
        return

    original_stop = DockerContainer.stop

    def _stop_with_retry(self: Any, force: bool = True, delete_volume: bool = True) -> None:
        delay = _STOP_BASE_DELAY_SECONDS
        for attempt in range(1, _STOP_RETRY_ATTEMPTS + 1):
            try:
                original_stop(self, force=force, delete_volume=delete_volume)
                return
            except Exception as exc:
                if attempt >= _STOP_RETRY_ATTEMPTS or not _is_transient_teardown_error(exc):
                    raise
                logger.warning(
                    "Transient Docker API teardown race (attempt %s/%s): %s",
                    attempt,
                    _STOP_RETRY_ATTEMPTS,
                    exc,
                )
                time.sleep(delay)
                delay *= 2

    _stop_with_retry._calcalc_retry_patch = True  # type: ignore[attr-defined]
    DockerContainer.stop = _stop_with_retry


_patch_testcontainers_stop_with_retry()


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
async def provisioned_database(postgres_container: PostgresContainer) -> AsyncIterator[Database]:
    """A new database with the sync schema applied, closed after the test."""
    from calcalc.db import Database, ensure_schema

    db = Database(
        db_name=f"test_{uuid.uuid4().hex[:12]}",
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
        min_pool_size=1,
        max_pool_size=3,
    )
    await db.provision()
    await db.connect()
    await ensure_schema(db)
    try:
        yield db
    finally:
        await db.close()
