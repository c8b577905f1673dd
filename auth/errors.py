"""
auth/errors.py -- Error taxonomy for the credential and verification core.

Two halves:
  ErrorKind classifies a *result* the orchestrators hand back to the HTTP
  layer. Each kind carries the status code the route answers with.

  DependencyError and its subclasses are *raised* by collaborators (identity
  store, mail dispatcher). The orchestrators catch them and either compensate
  (sign-up rollback, external-link rollback) or turn them into a DEPENDENCY
  result. They are never swallowed without a trace.

Layer rule: stdlib only.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    AUTHENTICATION = "authentication_failed"
    DEPENDENCY = "server_error"
    EXPIRED_OR_INVALID_CODE = "invalid_code"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.DEPENDENCY: 500,
    ErrorKind.EXPIRED_OR_INVALID_CODE: 400,
}


class DependencyError(Exception):
    """A collaborator outside the core (database, mail API) failed."""


class IdentityStoreError(DependencyError):
    """The identity store rejected or failed an operation."""


class DuplicateIdentityError(IdentityStoreError):
    """A unique constraint (email, username, external login) was violated."""


class MailDispatchError(DependencyError):
    """The mail dispatcher did not accept the message."""
