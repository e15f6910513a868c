"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging

import pytest

from calcalc.core.logging import (
    _NOISE_LOGGERS,
    _sync_user_context,
    add_otel_context,
    add_sync_user,
    configure_logging,
    get_sync_user,
    sync_user_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and sync-user context between tests."""
    token = _sync_user_context.set(None)
    yield
    _sync_user_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


# ---------------------------------------------------------------------------
# Sync user context
# ---------------------------------------------------------------------------


class TestSyncUserContext:
    def test_default_is_none(self):
        assert get_sync_user() is None

    def test_context_sets_and_restores(self):
        with sync_user_context("alice"):
            assert get_sync_user() == "alice"
        assert get_sync_user() is None

    def test_processor_injects_user(self):
        with sync_user_context("alice"):
            event = add_sync_user(None, "info", {"event": "hi"})  # type: ignore[arg-type]
        assert event["user_id"] == "alice"

    def test_processor_leaves_event_alone_outside_sync(self):
        event = add_sync_user(None, "info", {"event": "hi"})  # type: ignore[arg-type]
        assert "user_id" not in event


def test_otel_processor_without_span_adds_nothing():
    event = add_otel_context(None, "info", {"event": "hi"})  # type: ignore[arg-type]
    assert "trace_id" not in event


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_sets_root_level(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_reconfigure_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_are_quieted(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_file_output_carries_sync_user(self, tmp_path):
        configure_logging(fmt="json", log_root=tmp_path)

        with sync_user_context("alice"):
            logging.getLogger("calcalc.sync.engine").warning("Import batch rolled back")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "calcalc.log").read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "Import batch rolled back"
        assert record["user_id"] == "alice"
        assert record["level"] == "warning"
        assert (tmp_path / "http.log").exists()
