"""
tests/test_lifespan.py -- Startup wiring and the admin CLI.

Covers:
  - The real lifespan builds the store, seeds roles, wires orchestrators and
    picks LogMailDispatcher in debug mode without a mail API key
  - _build_mailer(): HTTP dispatcher with a key; refuses to start in
    production mode without one
  - main.py seed / create-user against a temporary SQLite file; a failed role
    assignment removes the half-created account
"""

from __future__ import annotations

import sys
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from api.main import _build_mailer, app, lifespan
from auth.accounts import CredentialOrchestrator
from auth.errors import IdentityStoreError
from auth.mailer import HttpMailDispatcher, LogMailDispatcher
from auth.store import IdentityStore
from core.config import Settings, get_settings


def test_real_lifespan_wires_app_state(tmp_path, monkeypatch) -> None:
    settings = get_settings()
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'life.db'}")
    monkeypatch.setattr(settings, "mail_api_key", "")
    monkeypatch.setattr(app.router, "lifespan_context", lifespan)

    with TestClient(app) as client:
        assert isinstance(app.state.accounts, CredentialOrchestrator)
        assert isinstance(app.state.mailer, LogMailDispatcher)
        store: IdentityStore = app.state.identity_store
        assert store.ensure_role("User") is False
        assert client.get("/api/v1/health").json()["components"]["database"] == "ok"


def test_build_mailer_with_key() -> None:
    settings = Settings(debug=True, mail_api_key="re_test_key")
    mailer = _build_mailer(settings)
    try:
        assert isinstance(mailer, HttpMailDispatcher)
    finally:
        mailer.close()


def test_build_mailer_refuses_production_without_key() -> None:
    settings = Settings(debug=False, secret_key="x" * 40, mail_api_key="")
    with pytest.raises(ValueError):
        _build_mailer(settings)


def test_default_role_must_be_seeded() -> None:
    with pytest.raises(ValueError):
        Settings(debug=True, default_role="Ghost", seed_roles=["Admin", "User"])


class TestCli:
    @pytest.fixture
    def cli_db(self, tmp_path, monkeypatch) -> str:
        url = f"sqlite:///{tmp_path / 'cli.db'}"
        monkeypatch.setattr(get_settings(), "database_url", url)
        return url

    def _run(self, monkeypatch, *argv: str) -> int:
        import main

        monkeypatch.setattr(sys, "argv", ["main.py", *argv])
        with pytest.raises(SystemExit) as exc:
            main.main()
        return exc.value.code

    def test_seed(self, cli_db, monkeypatch) -> None:
        assert self._run(monkeypatch, "seed") == 0
        store = IdentityStore(db_url=cli_db)
        try:
            assert store.ensure_role("Admin") is False
        finally:
            store.close()

    def test_create_user(self, cli_db, monkeypatch) -> None:
        monkeypatch.setattr("getpass.getpass", lambda prompt="": "cli-pass-123")
        assert self._run(monkeypatch, "create-user", "Cli@Example.com", "--role", "Admin") == 0
        assert self._run(monkeypatch, "create-user", "cli@example.com") == 1

        store = IdentityStore(db_url=cli_db)
        try:
            user = store.find_by_email("cli@example.com")
            assert user is not None
            assert user.email_confirmed is True
            assert store.get_roles(user) == {"Admin"}
        finally:
            store.close()

    def test_create_user_unknown_role(self, cli_db, monkeypatch) -> None:
        assert self._run(monkeypatch, "create-user", "x@example.com", "--role", "Ghost") == 2

    def test_create_user_role_failure_removes_account(self, cli_db, monkeypatch) -> None:
        monkeypatch.setattr("getpass.getpass", lambda prompt="": "cli-pass-123")
        monkeypatch.setattr(IdentityStore, "add_to_role", MagicMock(side_effect=IdentityStoreError("down")))

        assert self._run(monkeypatch, "create-user", "norole@example.com") == 1

        store = IdentityStore(db_url=cli_db)
        try:
            assert store.find_by_email("norole@example.com") is None
        finally:
            store.close()
