"""Shared fixtures for sync API tests.

The ``app`` fixture is a fresh application whose service getters point at
the in-memory fakes from ``tests/conftest.py``; no database is touched
because ``httpx.ASGITransport`` never runs the lifespan.
"""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from calcalc.api.app import create_app
from calcalc.api.deps import get_calendar_client, get_engine, get_token_store
from calcalc.config import CalcalcConfig, GoogleConfig


@pytest.fixture
def app(token_store, google_client, engine) -> FastAPI:
    app = create_app(CalcalcConfig(google=GoogleConfig(client_id="cid", client_secret="secret")))
    app.dependency_overrides[get_token_store] = lambda: token_store
    app.dependency_overrides[get_calendar_client] = lambda: google_client
    app.dependency_overrides[get_engine] = lambda: engine
    return app


@pytest.fixture
async def api_client(app: FastAPI):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
