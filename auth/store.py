"""
auth/store.py -- SQLAlchemy Core persistence layer for identities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity is the mapper. Orchestrator and route code never touches SQL
directly.

Tables:
  users        -- one row per identity; email and username are UNIQUE
  roles        -- known role names (seeded on startup)
  user_roles   -- identity <-> role membership
  user_claims  -- derived (type, value) claims; duplicates are physically
                  possible, the claim synchronizer checks before inserting
  user_logins  -- (provider, provider_key) -> identity links

Security:
  All queries use bound parameters. No f-strings in SQL.
  Passwords are stored as bcrypt hashes only (auth.tokens.hash_password).

Errors:
  Every database failure surfaces as IdentityStoreError. Unique-constraint
  violations (second account for one email, an external login linked twice)
  surface as DuplicateIdentityError. The UNIQUE constraints are what settles
  concurrent sign-ups for the same address -- the core does not lock.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import DuplicateIdentityError, IdentityStoreError
from auth.models import DerivedClaim, ExternalLoginInfo, Identity, SignInOutcome, normalize_email
from auth.tokens import equalize_password_timing, hash_password, verify_password

logger = logging.getLogger("accounts.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(400), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),  # normalized
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("user_image", Text),
    Column("hashed_password", Text),  # NULL for external-login-only users
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("lockout_end", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("name", String(64), primary_key=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), primary_key=True),
    Column("role", String(64), primary_key=True),
)

_user_claims = Table(
    "user_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("claim_type", String(100), nullable=False),
    Column("claim_value", Text, nullable=False),
)

_user_logins = Table(
    "user_logins",
    _metadata,
    Column("provider", String(50), primary_key=True),
    Column("provider_key", String(255), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_locked_out(identity: Identity) -> bool:
    if not identity.lockout_end:
        return False
    return datetime.fromisoformat(identity.lockout_end) > _now()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for identities, their roles, claims, and external logins.

    Usage:
        store = IdentityStore()
        store.ensure_role("User")
        ann = store.create(Identity(email="ann@example.com", username="ann@example.com"), "s3cret-pass")
        store.add_to_role(ann, "User")
        store.password_sign_in(ann, "s3cret-pass")   # SignInOutcome.SUCCESS
        store.close()

    require_confirmed_email: when True, unconfirmed identities get
    SignInOutcome.NOT_ALLOWED instead of signing in.
    """

    def __init__(self, db_url: str = "sqlite:///accounts.db", require_confirmed_email: bool = False) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.require_confirmed_email = require_confirmed_email

    @contextmanager
    def _begin(self, action: str) -> Iterator[Connection]:
        """Open a transaction and translate driver errors into store errors."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise DuplicateIdentityError(f"{action}: unique constraint violated") from exc
        except SQLAlchemyError as exc:
            raise IdentityStoreError(f"{action} failed") from exc

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._begin("count users") as conn:
            row = conn.execute(select(_users.c.id).limit(1)).fetchone()
        return row is not None

    def find_by_email(self, email: str) -> Optional[Identity]:
        """Look up an identity by email (case-insensitive, trimmed). Returns None if not found."""
        with self._begin("find identity by email") as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._begin("find identity by id") as conn:
            row = conn.execute(_users.select().where(_users.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_external_login(self, provider: str, provider_key: str) -> Optional[Identity]:
        """Look up the identity linked to (provider, provider_key). Returns None if unlinked."""
        query = (
            _users.select()
            .select_from(_users.join(_user_logins, _user_logins.c.user_id == _users.c.id))
            .where((_user_logins.c.provider == provider.lower()) & (_user_logins.c.provider_key == provider_key))
        )
        with self._begin("find identity by external login") as conn:
            row = conn.execute(query).fetchone()
        return _row_to_identity(row) if row is not None else None

    def create(self, identity: Identity, password: Optional[str] = None) -> Identity:
        """Insert a new identity and return it with id and created_at filled in.

        The email is normalized before insert. When password is given it is
        hashed here; otherwise identity.hashed_password is stored as-is (None
        for external-login-only accounts).

        Raises DuplicateIdentityError if the email or username already exists.
        """
        identity.id = identity.id or str(uuid.uuid4())
        identity.email = normalize_email(identity.email)
        identity.created_at = _now().isoformat()
        if password is not None:
            identity.hashed_password = hash_password(password)
        with self._begin("create identity") as conn:
            conn.execute(
                _users.insert().values(
                    id=identity.id,
                    username=identity.username,
                    email=identity.email,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    user_image=identity.user_image,
                    hashed_password=identity.hashed_password,
                    email_confirmed=1 if identity.email_confirmed else 0,
                    two_factor_enabled=1 if identity.two_factor_enabled else 0,
                    lockout_end=identity.lockout_end,
                    is_active=1 if identity.is_active else 0,
                    created_at=identity.created_at,
                )
            )
        logger.info("Identity created (id=%s)", identity.id)
        return identity

    def delete(self, identity: Identity) -> bool:
        """Permanently delete an identity together with its roles, claims and logins.

        Returns True if the identity row was deleted, False if it did not exist.
        """
        with self._begin("delete identity") as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == identity.id))
            conn.execute(_user_claims.delete().where(_user_claims.c.user_id == identity.id))
            conn.execute(_user_logins.delete().where(_user_logins.c.user_id == identity.id))
            result = conn.execute(_users.delete().where(_users.c.id == identity.id))
        return result.rowcount > 0

    def confirm_email(self, identity: Identity) -> bool:
        """Flip the activation flag. Returns True if a row was updated."""
        with self._begin("confirm email") as conn:
            result = conn.execute(_users.update().where(_users.c.id == identity.id).values(email_confirmed=1))
        identity.email_confirmed = True
        return result.rowcount > 0

    def set_lockout(self, identity: Identity, until: Optional[datetime]) -> None:
        """Lock the identity out until the given UTC time; None clears the lockout."""
        value = until.astimezone(timezone.utc).isoformat() if until is not None else None
        with self._begin("set lockout") as conn:
            conn.execute(_users.update().where(_users.c.id == identity.id).values(lockout_end=value))
        identity.lockout_end = value

    def update_last_login(self, identity: Identity) -> None:
        """Stamp the current UTC timestamp as last_login."""
        stamp = _now().isoformat()
        with self._begin("update last login") as conn:
            conn.execute(_users.update().where(_users.c.id == identity.id).values(last_login=stamp))
        identity.last_login = stamp

    # ------------------------------------------------------------------
    # Sign-in checks
    # ------------------------------------------------------------------

    def can_sign_in(self, identity: Identity) -> SignInOutcome:
        """Account-state checks shared by password and external sign-in."""
        if not identity.is_active:
            return SignInOutcome.NOT_ALLOWED
        if self.require_confirmed_email and not identity.email_confirmed:
            return SignInOutcome.NOT_ALLOWED
        if _is_locked_out(identity):
            return SignInOutcome.LOCKED_OUT
        return SignInOutcome.SUCCESS

    def password_sign_in(self, identity: Identity, password: str) -> SignInOutcome:
        """Check a password for an identity and classify the attempt.

        Order: account state, then password, then second factor. An identity
        without a local password always yields INVALID_CREDENTIALS, after the
        same bcrypt work a real comparison costs [C1].
        """
        outcome = self.can_sign_in(identity)
        if outcome is not SignInOutcome.SUCCESS:
            return outcome
        if identity.hashed_password is None:
            equalize_password_timing(password)
            return SignInOutcome.INVALID_CREDENTIALS
        if not verify_password(password, identity.hashed_password):
            return SignInOutcome.INVALID_CREDENTIALS
        if identity.two_factor_enabled:
            return SignInOutcome.REQUIRES_TWO_FACTOR
        return SignInOutcome.SUCCESS

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_role(self, name: str) -> bool:
        """Create a role if it does not exist. Returns True if it was created."""
        with self._begin("ensure role") as conn:
            exists = conn.execute(select(_roles.c.name).where(_roles.c.name == name)).fetchone()
            if exists is None:
                conn.execute(_roles.insert().values(name=name))
        return exists is None

    def get_roles(self, identity: Identity) -> set[str]:
        with self._begin("get roles") as conn:
            rows = conn.execute(select(_user_roles.c.role).where(_user_roles.c.user_id == identity.id)).fetchall()
        return {r.role for r in rows}

    def add_to_role(self, identity: Identity, role: str) -> None:
        """Add the identity to an existing role.

        Raises IdentityStoreError for an unknown role and DuplicateIdentityError
        if the identity already holds it.
        """
        with self._begin("add to role") as conn:
            known = conn.execute(select(_roles.c.name).where(_roles.c.name == role)).fetchone()
            if known is None:
                raise IdentityStoreError(f"Role {role!r} does not exist.")
            conn.execute(_user_roles.insert().values(user_id=identity.id, role=role))

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def get_claims(self, identity: Identity) -> list[DerivedClaim]:
        """Return the identity's claims in insertion order."""
        with self._begin("get claims") as conn:
            rows = conn.execute(
                select(_user_claims.c.claim_type, _user_claims.c.claim_value)
                .where(_user_claims.c.user_id == identity.id)
                .order_by(_user_claims.c.id)
            ).fetchall()
        return [DerivedClaim(type=r.claim_type, value=r.claim_value) for r in rows]

    def add_claims(self, identity: Identity, claims: Iterable[DerivedClaim]) -> None:
        values = [{"user_id": identity.id, "claim_type": c.type, "claim_value": c.value} for c in claims]
        if not values:
            return
        with self._begin("add claims") as conn:
            conn.execute(_user_claims.insert(), values)

    # ------------------------------------------------------------------
    # External logins
    # ------------------------------------------------------------------

    def add_external_login(self, identity: Identity, info: ExternalLoginInfo) -> None:
        """Link (provider, provider_key) to the identity.

        Raises DuplicateIdentityError if that provider key is already linked.
        """
        with self._begin("add external login") as conn:
            conn.execute(
                _user_logins.insert().values(
                    provider=info.provider.lower(),
                    provider_key=info.provider_key,
                    user_id=identity.id,
                )
            )

    def get_external_logins(self, identity: Identity) -> list[tuple[str, str]]:
        with self._begin("get external logins") as conn:
            rows = conn.execute(
                select(_user_logins.c.provider, _user_logins.c.provider_key).where(
                    _user_logins.c.user_id == identity.id
                )
            ).fetchall()
        return [(r.provider, r.provider_key) for r in rows]

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed(self, roles: Iterable[str], admin_email: str = "", admin_password: str = "") -> Optional[Identity]:
        """Make sure every role exists and, when credentials are given, an admin account.

        Idempotent: safe to call on every startup. Returns the admin identity
        if one was created by this call, None otherwise.
        """
        for role in roles:
            if self.ensure_role(role):
                logger.info("Role seeded: %s", role)
        if not (admin_email and admin_password):
            return None
        if self.find_by_email(admin_email) is not None:
            return None
        email = normalize_email(admin_email)
        admin = self.create(Identity(email=email, username=email, email_confirmed=True), admin_password)
        self.ensure_role("Admin")
        self.add_to_role(admin, "Admin")
        logger.info("Admin account seeded (id=%s)", admin.id)
        return admin

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        user_image=row.user_image,
        hashed_password=row.hashed_password,
        email_confirmed=bool(row.email_confirmed),
        two_factor_enabled=bool(row.two_factor_enabled),
        lockout_end=row.lockout_end,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )
