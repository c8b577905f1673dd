"""
tests/test_identity_store.py -- Unit tests for auth/store.py IdentityStore.

Covers:
  - create/find round trip, email normalization, password hashing
  - Duplicate email -> DuplicateIdentityError
  - delete() cascades roles, claims and external logins
  - password_sign_in() outcome classification (success, wrong password,
    no local password, lockout, inactive, unconfirmed-when-required, 2FA)
  - Roles: ensure_role idempotence, unknown role rejected
  - Claims kept in insertion order
  - External logins: lookup is provider-case-insensitive; a key links once
  - seed() idempotence and admin creation
  - Driver failures surface as IdentityStoreError
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from auth.errors import DuplicateIdentityError, IdentityStoreError
from auth.models import DerivedClaim, ExternalLoginInfo, Identity, SignInOutcome


def _new(store, email: str = "ann@example.com", password: str | None = "correct-horse", **kw) -> Identity:
    return store.create(Identity(email=email, username=email, **kw), password)


class TestCreateAndFind:
    def test_create_assigns_id_and_timestamp(self, store) -> None:
        ann = _new(store)
        assert ann.id
        assert ann.created_at

    def test_find_by_email_is_normalized(self, store) -> None:
        _new(store, email="Ann@Example.com")
        found = store.find_by_email("  ANN@example.COM ")
        assert found is not None
        assert found.email == "ann@example.com"

    def test_find_by_id(self, store) -> None:
        ann = _new(store)
        assert store.find_by_id(ann.id).email == ann.email
        assert store.find_by_id("missing") is None

    def test_password_is_hashed(self, store) -> None:
        ann = _new(store)
        stored = store.find_by_id(ann.id)
        assert stored.hashed_password
        assert stored.hashed_password != "correct-horse"

    def test_duplicate_email_rejected(self, store) -> None:
        _new(store)
        with pytest.raises(DuplicateIdentityError):
            store.create(Identity(email="ANN@example.com", username="other"), "pw-12345678")

    def test_has_users(self, store) -> None:
        assert store.has_users() is False
        _new(store)
        assert store.has_users() is True


class TestDelete:
    def test_delete_cascades(self, store) -> None:
        ann = _new(store)
        store.add_to_role(ann, "User")
        store.add_claims(ann, [DerivedClaim("DisplayName", "Ann")])
        store.add_external_login(ann, ExternalLoginInfo("google", "sub-1", ann.email))

        assert store.delete(ann) is True

        assert store.find_by_id(ann.id) is None
        assert store.get_roles(ann) == set()
        assert store.get_claims(ann) == []
        assert store.find_by_external_login("google", "sub-1") is None

    def test_delete_missing_returns_false(self, store) -> None:
        assert store.delete(Identity(email="x@example.com", username="x", id="nope")) is False

    def test_email_reusable_after_delete(self, store) -> None:
        ann = _new(store)
        store.delete(ann)
        assert _new(store).id != ann.id


class TestPasswordSignIn:
    def test_success(self, store) -> None:
        ann = _new(store)
        assert store.password_sign_in(ann, "correct-horse") is SignInOutcome.SUCCESS

    def test_wrong_password(self, store) -> None:
        ann = _new(store)
        assert store.password_sign_in(ann, "wrong-horse") is SignInOutcome.INVALID_CREDENTIALS

    def test_no_local_password(self, store) -> None:
        ext = _new(store, password=None)
        assert store.password_sign_in(ext, "anything") is SignInOutcome.INVALID_CREDENTIALS

    def test_locked_out(self, store) -> None:
        ann = _new(store)
        store.set_lockout(ann, datetime.now(timezone.utc) + timedelta(minutes=5))
        assert store.password_sign_in(store.find_by_id(ann.id), "correct-horse") is SignInOutcome.LOCKED_OUT

    def test_expired_lockout_allows_sign_in(self, store) -> None:
        ann = _new(store)
        store.set_lockout(ann, datetime.now(timezone.utc) - timedelta(minutes=5))
        assert store.password_sign_in(ann, "correct-horse") is SignInOutcome.SUCCESS

    def test_cleared_lockout(self, store) -> None:
        ann = _new(store)
        store.set_lockout(ann, datetime.now(timezone.utc) + timedelta(minutes=5))
        store.set_lockout(ann, None)
        assert store.password_sign_in(store.find_by_id(ann.id), "correct-horse") is SignInOutcome.SUCCESS

    def test_inactive_not_allowed(self, store) -> None:
        ann = _new(store, is_active=False)
        assert store.password_sign_in(ann, "correct-horse") is SignInOutcome.NOT_ALLOWED

    def test_two_factor_required(self, store) -> None:
        ann = _new(store, two_factor_enabled=True)
        assert store.password_sign_in(ann, "correct-horse") is SignInOutcome.REQUIRES_TWO_FACTOR

    def test_unconfirmed_not_allowed_when_required(self, strict_store) -> None:
        ann = _new(strict_store)
        assert strict_store.password_sign_in(ann, "correct-horse") is SignInOutcome.NOT_ALLOWED
        strict_store.confirm_email(ann)
        assert strict_store.password_sign_in(ann, "correct-horse") is SignInOutcome.SUCCESS

    def test_confirm_email_persists(self, store) -> None:
        ann = _new(store)
        assert store.confirm_email(ann) is True
        assert store.find_by_id(ann.id).email_confirmed is True

    def test_update_last_login(self, store) -> None:
        ann = _new(store)
        store.update_last_login(ann)
        assert store.find_by_id(ann.id).last_login == ann.last_login


class TestRoles:
    def test_ensure_role_idempotent(self, store) -> None:
        assert store.ensure_role("Auditor") is True
        assert store.ensure_role("Auditor") is False

    def test_add_and_get_roles(self, store) -> None:
        ann = _new(store)
        store.add_to_role(ann, "User")
        store.add_to_role(ann, "Admin")
        assert store.get_roles(ann) == {"User", "Admin"}

    def test_unknown_role_rejected(self, store) -> None:
        ann = _new(store)
        with pytest.raises(IdentityStoreError):
            store.add_to_role(ann, "Nope")

    def test_role_added_twice_is_duplicate(self, store) -> None:
        ann = _new(store)
        store.add_to_role(ann, "User")
        with pytest.raises(DuplicateIdentityError):
            store.add_to_role(ann, "User")


class TestClaims:
    def test_claims_in_insertion_order(self, store) -> None:
        ann = _new(store)
        store.add_claims(ann, [DerivedClaim("DisplayName", "A")])
        store.add_claims(ann, [DerivedClaim("DisplayName", "B"), DerivedClaim("DisplayRole", "User")])
        assert store.get_claims(ann) == [
            DerivedClaim("DisplayName", "A"),
            DerivedClaim("DisplayName", "B"),
            DerivedClaim("DisplayRole", "User"),
        ]

    def test_add_no_claims_is_noop(self, store) -> None:
        ann = _new(store)
        store.add_claims(ann, [])
        assert store.get_claims(ann) == []


class TestExternalLogins:
    def test_lookup_by_provider_key(self, store) -> None:
        ann = _new(store, password=None)
        store.add_external_login(ann, ExternalLoginInfo("Google", "sub-1", ann.email))
        found = store.find_by_external_login("google", "sub-1")
        assert found is not None and found.id == ann.id
        assert store.get_external_logins(ann) == [("google", "sub-1")]

    def test_same_key_cannot_link_twice(self, store) -> None:
        ann = _new(store)
        bob = _new(store, email="bob@example.com")
        store.add_external_login(ann, ExternalLoginInfo("google", "sub-1", ann.email))
        with pytest.raises(DuplicateIdentityError):
            store.add_external_login(bob, ExternalLoginInfo("google", "sub-1", bob.email))


class TestSeed:
    def test_seed_idempotent_without_admin(self, store) -> None:
        assert store.seed(["Admin", "User"]) is None
        assert store.seed(["Admin", "User"]) is None

    def test_seed_creates_admin_once(self, store) -> None:
        admin = store.seed(["Admin", "User"], "Root@Example.com", "admin-pass-123")
        assert admin is not None
        assert admin.email == "root@example.com"
        assert admin.email_confirmed is True
        assert store.get_roles(admin) == {"Admin"}
        assert store.seed(["Admin", "User"], "root@example.com", "admin-pass-123") is None


class TestStoreErrors:
    def test_driver_error_becomes_identity_store_error(self, store) -> None:
        ann = _new(store)
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE user_claims"))
        with pytest.raises(IdentityStoreError):
            store.get_claims(ann)
