"""
tests/conftest.py -- Shared test fixtures for the account service tests.

This module provides:
  - make_store(): isolated in-memory identity store with roles seeded
  - FakeMailer: records every message; can be switched to fail
  - FakeClock: manually advanced clock for CodeCache expiry tests
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - api_client: TestClient against the real app with in-memory collaborators

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError. Rate
limits are pinned for the same reason: one TestClient IP makes every request,
so the limiter is reset before each test and the limit tests know the ceiling.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import -- get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SIGNIN_RATE_LIMIT", "10/minute")
os.environ.setdefault("VERIFICATION_RATE_LIMIT", "10/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.errors import MailDispatchError
from auth.store import IdentityStore
from cache.store import CodeCache
from core.config import get_settings

SEED_ROLES = ["Admin", "User"]

_CODE_RE = re.compile(r"\b(\d{6})\b")


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class SentMail:
    to_address: str
    subject: str
    plain_body: str
    html_body: str

    @property
    def code(self) -> str:
        match = _CODE_RE.search(self.plain_body)
        assert match, "no six-digit code in mail body"
        return match.group(1)


@dataclass
class FakeMailer:
    """MailDispatcher stand-in. Set fail=True to simulate a provider outage."""

    fail: bool = False
    sent: list[SentMail] = field(default_factory=list)

    def send(self, to_address: str, subject: str, plain_body: str, html_body: str) -> None:
        if self.fail:
            raise MailDispatchError("provider unavailable")
        self.sent.append(SentMail(to_address, subject, plain_body, html_body))

    def last_to(self, address: str) -> SentMail:
        for mail in reversed(self.sent):
            if mail.to_address == address:
                return mail
        raise AssertionError(f"no mail sent to {address}")

    def close(self) -> None:
        pass


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str = "", require_confirmed_email: bool = False) -> IdentityStore:
    """Create an isolated named shared-memory identity store with roles seeded.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't share
                   state. Defaults to a random suffix.
    """
    suffix = db_suffix or uuid.uuid4().hex
    store = IdentityStore(
        db_url=f"sqlite:///file:test_accounts_{suffix}?mode=memory&cache=shared&uri=true",
        require_confirmed_email=require_confirmed_email,
    )
    store.seed(SEED_ROLES)
    return store


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def strict_store() -> Generator[IdentityStore, None, None]:
    """Store that refuses sign-in until the email is confirmed."""
    s = make_store(require_confirmed_email=True)
    yield s
    s.close()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_rate_limits() -> None:
    """Clear slowapi counters so each test starts with the full allowance."""
    limiter.reset()


def _patch_lifespan(store: IdentityStore, cache: CodeCache, mailer: FakeMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test collaborators through the same wire_services() the real
    lifespan uses, and mocks the OAuth registry to prevent network calls.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store, cache, mailer, get_settings())
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, IdentityStore, FakeMailer], None, None]:
    """Yield (client, store, mailer) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated in-memory store and a fake
    mailer. follow_redirects=False so external-login tests can assert on
    redirect locations.
    """
    store = make_store("api")
    mailer = FakeMailer()
    cache = CodeCache()

    app.router.lifespan_context = _patch_lifespan(store, cache, mailer)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store, mailer

    store.close()
