"""
api/routes/v1/accounts.py -- Account REST endpoints.

Routes:
  POST /api/v1/accounts/signup                      -- create account, send code, sign in
  POST /api/v1/accounts/signin                      -- password sign-in; sets JWT cookie
  POST /api/v1/accounts/signout                     -- clears cookie; 200
  GET  /api/v1/accounts/me                          -- current identity (requires auth)
  POST /api/v1/accounts/verification/send           -- (re)send a verification code
  POST /api/v1/accounts/verification/redeem         -- redeem a code; activates the account
  GET  /api/v1/accounts/providers                   -- list enabled external providers (public)
  GET  /api/v1/accounts/external/{provider}         -- redirect to provider
  GET  /api/v1/accounts/external/{provider}/callback -- provider callback; link/sign in

Security:
  [H2] sign-in and both verification routes are rate-limited per IP.
  [C1] Unknown email and wrong password return the same 401 body.
  [C2] return_url is reduced to a server-local path before any redirect.
  [M5] Cache-Control: no-store on every response that carries a token.

Route handlers are plain `def` -- Starlette runs them in its threadpool, one
worker thread per request, so the blocking store/mail calls never stall the
event loop. The async callback offloads link_external() the same way.
"""

import logging
from typing import Optional

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import SIGNIN_LIMIT, VERIFICATION_LIMIT, limiter
from api.models import (
    ExternalProviderInfo,
    MeResponse,
    RedeemVerificationRequest,
    SendVerificationRequest,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    SignUpResponse,
    UserSummaryResponse,
    VerificationResponse,
)
from auth.accounts import CredentialOrchestrator
from auth.claims import ClaimSynchronizer
from auth.dependencies import get_current_identity
from auth.models import AuthResult, Identity, UserSummary, VerificationResult
from auth.oauth import get_enabled_providers, get_external_login_info
from auth.store import IdentityStore
from auth.tokens import set_auth_cookie

logger = logging.getLogger("accounts.api.accounts")

# Auth policy:
# - signup, signin, signout, verification/*, providers, external/*: public
# - me: requires auth (get_current_identity)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-sign-in redirect target. Only accept relative paths. [C2]

    Rejects absolute URLs and protocol-relative "//host" targets, both of
    which would send the user off-site after sign-in.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/"


def _accounts(request: Request) -> CredentialOrchestrator:
    return request.app.state.accounts


def _user_response(user: Optional[UserSummary]) -> Optional[UserSummaryResponse]:
    if user is None:
        return None
    return UserSummaryResponse(id=user.id, email=user.email, first_name=user.first_name, last_name=user.last_name)


def _error_body(result: AuthResult) -> dict:
    """Error envelope for a failed sign-up or sign-in, flagged succeeded=false."""
    code = result.error_kind.value if result.error_kind else "error"
    return {"succeeded": False, "error": {"code": code, "message": result.error, "detail": None}}


def _verification_response(result: VerificationResult) -> JSONResponse:
    body = VerificationResponse(
        succeeded=result.succeeded,
        message=result.message,
        error=result.error,
        reason=result.reason,
    )
    return JSONResponse(status_code=result.status_code, content=body.model_dump())


# ---------------------------------------------------------------------------
# Local accounts
# ---------------------------------------------------------------------------


@router.post("/accounts/signup", response_model=SignUpResponse, status_code=201)
def sign_up(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create a local account, email a verification code, and sign in.

    A failure to send the code removes the account again and answers 500.
    When unverified sign-in is disabled the account is created but no token
    is issued (state "pending_sign_in").
    """
    result = _accounts(request).sign_up(body.email, body.password, body.first_name, body.last_name)
    if not result.succeeded:
        content = _error_body(result)
        content["errors"] = result.errors
        return JSONResponse(status_code=result.status_code, content=content)

    resp = JSONResponse(
        status_code=result.status_code,
        content=SignUpResponse(
            succeeded=True,
            state=result.state.value if result.state else None,
            token=result.token,
            user=_user_response(result.user),
        ).model_dump(),
    )
    if result.token:
        set_auth_cookie(resp, result.token, result.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/accounts/signin", response_model=SignInResponse)
@limiter.limit(SIGNIN_LIMIT)  # [H2] brute-force mitigation
def sign_in(request: Request, body: SignInRequest, return_url: Optional[str] = None) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Returns the same generic error for an unknown email and a wrong password
    so the endpoint cannot be used to find out which addresses are registered.
    """
    result = _accounts(request).sign_in(body.email, body.password, body.is_persistent)
    if not result.succeeded:
        resp = JSONResponse(status_code=result.status_code, content=_error_body(result))
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    resp = JSONResponse(
        status_code=200,
        content=SignInResponse(
            succeeded=True,
            token=result.token,
            expires_in=result.expires_in,
            user=_user_response(result.user),
            redirect_url=_safe_next(return_url),
        ).model_dump(),
    )
    set_auth_cookie(resp, result.token, result.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/accounts/signout")
def sign_out() -> JSONResponse:
    """Clear the JWT cookie. Tokens are stateless, so nothing else to revoke."""
    resp = JSONResponse(content={"message": "Signed out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/accounts/me", response_model=MeResponse)
def me(request: Request, identity: Identity = Depends(get_current_identity)) -> MeResponse:
    """Return the authenticated identity with its roles and display claims."""
    store: IdentityStore = request.app.state.identity_store
    claims: ClaimSynchronizer = request.app.state.claims
    return MeResponse(
        id=identity.id,
        email=identity.email,
        first_name=identity.first_name,
        last_name=identity.last_name,
        email_confirmed=identity.email_confirmed,
        roles=sorted(store.get_roles(identity)),
        claims=claims.current_claims(identity),
    )


# ---------------------------------------------------------------------------
# Verification codes
# ---------------------------------------------------------------------------


@router.post("/accounts/verification/send", response_model=VerificationResponse)
@limiter.limit(VERIFICATION_LIMIT)  # [H2] each call sends an email
def send_verification(request: Request, body: SendVerificationRequest) -> JSONResponse:
    """Send a fresh verification code. Any earlier code for the address stops working."""
    return _verification_response(_accounts(request).send_verification(body.email))


@router.post("/accounts/verification/redeem", response_model=VerificationResponse)
@limiter.limit(VERIFICATION_LIMIT)  # [H2] 6-digit codes must not be brute-forced
def redeem_verification(request: Request, body: RedeemVerificationRequest) -> JSONResponse:
    """Redeem a verification code and mark the account's email as confirmed."""
    return _verification_response(_accounts(request).confirm_email(body.email, body.code))


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


@router.get("/accounts/providers", response_model=list[ExternalProviderInfo])
def list_providers() -> list[ExternalProviderInfo]:
    """Return the configured external providers. Empty when none are set up."""
    return [ExternalProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/accounts/external/{provider}")
async def external_sign_in(request: Request, provider: str, return_url: Optional[str] = None):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a spoofed
    name cannot trigger a redirect anywhere. return_url is kept in the session
    until the callback.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/signin?error=external_failed", status_code=302)

    request.session["return_url"] = _safe_next(return_url)  # [C2]
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("external_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/accounts/external/{provider}/callback", name="external_callback")
async def external_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback: link or create the account and sign in.

    Flow:
      1. Exchange the authorization code (authlib checks state via session).
      2. Extract a verified email and subject id [H1].
      3. CredentialOrchestrator.link_external() -- in a worker thread.
      4. Set the token cookie and redirect to the saved return URL.
    Any failure redirects to /signin?error=external_failed.
    """
    failed = RedirectResponse("/signin?error=external_failed", status_code=302)
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return failed

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return failed

    try:
        info = get_external_login_info(provider, token)
    except ValueError:
        logger.warning("External sign-in rejected: unverified or missing email from %r", provider)
        return failed

    result = await run_in_threadpool(_accounts(request).link_external, info)
    if not result.succeeded:
        logger.warning("External sign-in failed (%s): %s", provider, "; ".join(result.errors))
        return failed

    resp = RedirectResponse(_safe_next(request.session.pop("return_url", None)), status_code=302)
    set_auth_cookie(resp, result.token, result.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
