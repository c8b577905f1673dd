"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, orchestrators and routes do the work. The one exception is
summarize(), an explicit entity -> view mapping used wherever a minimal user
payload leaves the service.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from auth.errors import ErrorKind

# Claim types written by the claim synchronizer.
DISPLAY_NAME = "DisplayName"
DISPLAY_ROLE = "DisplayRole"


def normalize_email(email: Optional[str]) -> str:
    """Return the lookup key for an email address: trimmed and lower-cased."""
    return (email or "").strip().lower()


@dataclass
class Identity:
    """A user's authentication record.

    email is always stored normalized (see normalize_email) and is the lookup
    key for verification codes and claims. username is the email for local
    accounts and ext_<provider>_<email> for accounts created by an external
    login.

    hashed_password is None for accounts that only sign in through an external
    provider. email_confirmed is the activation flag flipped by a successful
    verification-code redemption.
    """

    email: str
    username: str
    id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_image: Optional[str] = None
    hashed_password: Optional[str] = None
    email_confirmed: bool = False
    two_factor_enabled: bool = False
    lockout_end: Optional[str] = None  # ISO 8601, UTC
    is_active: bool = True
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.username


@dataclass(frozen=True)
class DerivedClaim:
    """A typed (key, value) attribute attached to an identity."""

    type: str
    value: str


@dataclass
class ExternalLoginInfo:
    """What an identity provider told us about the user at callback time.

    Used only while linking; the store persists (provider, provider_key) and
    copies the name parts onto a newly created identity.
    """

    provider: str
    provider_key: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    picture: Optional[str] = None


class SignInOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED_OUT = "locked_out"
    NOT_ALLOWED = "not_allowed"
    REQUIRES_TWO_FACTOR = "requires_two_factor"


class SignUpState(str, Enum):
    """Terminal states of the sign-up flow."""

    ACTIVATED = "activated"
    PENDING_SIGN_IN = "pending_sign_in"
    ROLLED_BACK = "rolled_back"


@dataclass
class UserSummary:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def summarize(identity: Identity) -> UserSummary:
    """Map an Identity onto the minimal payload returned after sign-in."""
    return UserSummary(
        id=identity.id or "",
        email=identity.email,
        first_name=identity.first_name,
        last_name=identity.last_name,
    )


@dataclass
class AuthResult:
    """Outcome of a sign-up, sign-in, or external-login attempt.

    error is the single user-visible message; errors carries every message
    when more than one collaborator failure is reported (external linking).
    warnings hold non-fatal problems such as a failed claim write.
    """

    succeeded: bool
    status_code: int
    token: Optional[str] = None
    user: Optional[UserSummary] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    outcome: Optional[SignInOutcome] = None
    state: Optional[SignUpState] = None
    expires_in: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **kwargs) -> AuthResult:
        errors = kwargs.pop("errors", None) or [message]
        return cls(
            succeeded=False,
            status_code=kind.status_code,
            error=message,
            error_kind=kind,
            errors=errors,
            **kwargs,
        )


@dataclass
class VerificationResult:
    """Outcome of sending or redeeming a verification code.

    reason is set on redemption failures: "expired_or_missing" when no live
    code exists for the address, "mismatch" when a live code exists but the
    submitted one differs (the live code is kept for a retry).
    """

    succeeded: bool
    status_code: int = 200
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, reason: Optional[str] = None) -> VerificationResult:
        return cls(succeeded=False, status_code=kind.status_code, error=message, error_kind=kind, reason=reason)
