"""
tests/conftest.py -- Shared test fixtures for GRC Admin tests.

This module provides:
  - backend / store: an isolated in-memory SQLite backend and GRCStore per test
  - vulnerability_payload / incident_payload: factories for valid create bodies
  - _patch_lifespan(): wires a test store into app.state, bypassing real startup
  - api_client: module-scoped TestClient over the real FastAPI app

In-memory SQLite: SQLBackend switches to a single shared connection
(StaticPool) for :memory: URLs, because repository calls run in worker
threads and a plain :memory: database is private to one connection.

Environment variables must be set before api.main is imported, because the
app reads get_settings() at import time (allowed hosts, rate limits).
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any, Callable

# CRITICAL: set before any api/core import so get_settings() sees them.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')
os.environ.setdefault("RATE_LIMIT_DEFAULT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from store.backend import SQLBackend
from store.repository import GRCStore

MEMORY_URL = "sqlite:///:memory:"


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def backend() -> Generator[SQLBackend, None, None]:
    """Fresh in-memory backend with every table created."""
    b = SQLBackend(MEMORY_URL)
    yield b
    b.close()


@pytest.fixture
def store(backend: SQLBackend) -> GRCStore:
    return GRCStore(backend, timeout=5.0)


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def _short_code(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10].upper()}"


@pytest.fixture
def vulnerability_payload() -> Callable[..., dict[str, Any]]:
    """Return a factory for valid vulnerability create bodies."""

    def make(**overrides: Any) -> dict[str, Any]:
        body = {
            "vulnerability_id": _short_code("VULN"),
            "title": "Outdated TLS configuration",
            "description": "Server accepts deprecated protocol versions.",
            "severity": "medium",
            "status": "open",
            "priority": "medium",
            "discovery_date": "2024-03-01",
        }
        body.update(overrides)
        return body

    return make


@pytest.fixture
def incident_payload() -> Callable[..., dict[str, Any]]:
    """Return a factory for valid incident create bodies."""

    def make(**overrides: Any) -> dict[str, Any]:
        body = {
            "title": "Phishing campaign against finance",
            "description": "Several users reported a credential harvesting email.",
            "incident_type": "phishing",
            "severity": "high",
            "status": "open",
            "priority": "high",
            "detected_at": "2024-05-02T09:30:00+00:00",
        }
        body.update(overrides)
        return body

    return make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: GRCStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store into app.state so TestClient routes use
    an isolated in-memory database rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, middleware and exception handlers.
    """
    test_store = GRCStore(SQLBackend(MEMORY_URL), timeout=5.0)
    app.router.lifespan_context = _patch_lifespan(test_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    test_store.close()
