"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by sign-in / sign-up / external callback.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on an Identity after the token verifies and the identity still
exists and is active.

try_get_current_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Identity
from auth.store import IdentityStore
from auth.tokens import decode_access_token


def try_get_current_identity(request: Request) -> Identity | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated Identity on success, None on any failure.
    Never raises.
    """
    store: IdentityStore = request.app.state.identity_store

    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None

    payload = decode_access_token(token)
    if payload is None:
        return None
    identity = store.find_by_id(payload["sub"])
    if identity is None or not identity.is_active:
        return None
    return identity


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    identity = try_get_current_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return identity
