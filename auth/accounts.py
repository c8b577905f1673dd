"""
auth/accounts.py -- Sign-up, sign-in and external-login orchestration.

sign_up():
    normalize -> reject existing email -> create (unconfirmed) -> default role
    -> send verification code -> token (or pending, per policy)
  Any failure after the identity row exists deletes it again, so a failed
  sign-up never leaves an orphaned unconfirmed account behind. The rollback
  runs synchronously in the request's worker thread; a client that hangs up
  does not interrupt it.

sign_in():
    find by email -> store classifies the password attempt -> on success sync
    display claims, issue token, return a minimal user summary.
  Unknown email and wrong password produce the same message and cost the
  same bcrypt work [C1].

link_external():
    direct sign-in by (provider, key) -> otherwise find-or-create by email,
    link the provider key, sign in.
  An identity created here is deleted again if linking fails (same policy as
  sign_up). An existing account whose email was never verified is not linked
  -- someone could have registered the victim's address first (pre-hijack).
  A create that loses to a concurrent callback for the same address re-reads
  the winner's identity and signs in to it.

Claim-sync problems are collected as warnings; they never fail a flow.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Optional

from auth.claims import ClaimSynchronizer
from auth.errors import DuplicateIdentityError, ErrorKind, IdentityStoreError
from auth.models import (
    AuthResult,
    ExternalLoginInfo,
    Identity,
    SignInOutcome,
    SignUpState,
    VerificationResult,
    normalize_email,
    summarize,
)
from auth.store import IdentityStore
from auth.tokens import create_access_token, equalize_password_timing
from auth.verification import VerificationOrchestrator

logger = logging.getLogger("accounts.auth.accounts")

TokenIssuer = Callable[[dict[str, Any], int], str]

GENERIC_SIGN_IN_ERROR = "Invalid Email or password."

_SIGN_IN_MESSAGES: dict[SignInOutcome, str] = {
    SignInOutcome.LOCKED_OUT: "Account is locked out.",
    SignInOutcome.NOT_ALLOWED: "Account is not allowed to sign in.",
    SignInOutcome.REQUIRES_TWO_FACTOR: "Two-factor authentication required.",
}

_MISSING_FIELDS = "Not all required fields are supplied."
_EMAIL_TAKEN = "An account with this email already exists."
_CREATE_FAILED = "User could not be created. Please try again later."
_SEND_FAILED = "Verification email could not be sent. Please try again later."
_UNAVAILABLE = "Sign-in is temporarily unavailable. Please try again later."
_LINK_FAILED = "External login could not be linked."
_UNVERIFIED_EXISTS = "An unverified account with this email already exists. Verify it before linking."


def external_username(provider: str, email: str) -> str:
    return f"ext_{provider.lower()}_{email}"


def sign_in_message(outcome: SignInOutcome) -> str:
    return _SIGN_IN_MESSAGES.get(outcome, GENERIC_SIGN_IN_ERROR)


class CredentialOrchestrator:
    def __init__(
        self,
        store: IdentityStore,
        verification: VerificationOrchestrator,
        claims: Optional[ClaimSynchronizer] = None,
        issue_token: TokenIssuer = create_access_token,
        default_role: str = "User",
        allow_unconfirmed_sign_in: bool = True,
        token_expire_seconds: int = 3600,
        persistent_token_expire_seconds: int = 14 * 24 * 3600,
    ) -> None:
        self.store = store
        self.verification = verification
        self.claims = claims or ClaimSynchronizer(store)
        self.issue_token = issue_token
        self.default_role = default_role
        self.allow_unconfirmed_sign_in = allow_unconfirmed_sign_in
        self.token_expire_seconds = token_expire_seconds
        self.persistent_token_expire_seconds = persistent_token_expire_seconds

    # ------------------------------------------------------------------
    # Local accounts
    # ------------------------------------------------------------------

    def sign_up(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        address = normalize_email(email)
        if not address or not password:
            return AuthResult.failure(ErrorKind.VALIDATION, _MISSING_FIELDS)

        try:
            if self.store.find_by_email(address) is not None:
                return AuthResult.failure(ErrorKind.CONFLICT, _EMAIL_TAKEN)
            identity = self.store.create(
                Identity(email=address, username=address, first_name=first_name, last_name=last_name),
                password,
            )
        except DuplicateIdentityError:
            # Lost a race with a concurrent sign-up for the same address.
            return AuthResult.failure(ErrorKind.CONFLICT, _EMAIL_TAKEN)
        except IdentityStoreError:
            logger.warning("Sign-up: identity could not be created", exc_info=True)
            return AuthResult.failure(ErrorKind.DEPENDENCY, _CREATE_FAILED)

        try:
            self.store.add_to_role(identity, self.default_role)
        except IdentityStoreError:
            logger.warning("Sign-up: role %r could not be assigned", self.default_role, exc_info=True)
            return self._roll_back(identity, _CREATE_FAILED)
        except Exception:
            self._delete_quietly(identity)
            raise

        try:
            sent = self.verification.send_code(address)
        except Exception:
            logger.warning("Sign-up: verification dispatch raised; removing identity %s", identity.id)
            self._delete_quietly(identity)
            raise
        if not sent.succeeded:
            return self._roll_back(identity, _SEND_FAILED)

        if not self.allow_unconfirmed_sign_in:
            return AuthResult(
                succeeded=True,
                status_code=201,
                user=summarize(identity),
                state=SignUpState.PENDING_SIGN_IN,
            )

        result = self._complete_sign_in(identity, persistent=False)
        result.status_code = 201
        result.state = SignUpState.ACTIVATED
        return result

    def sign_in(self, email: str, password: str, persistent: bool = False) -> AuthResult:
        address = normalize_email(email)
        if not address or not password:
            return AuthResult.failure(ErrorKind.VALIDATION, _MISSING_FIELDS)

        try:
            identity = self.store.find_by_email(address)
            if identity is None:
                equalize_password_timing(password)
                return self._sign_in_failure(SignInOutcome.INVALID_CREDENTIALS)
            outcome = self.store.password_sign_in(identity, password)
        except IdentityStoreError:
            logger.warning("Sign-in: identity store unavailable", exc_info=True)
            return AuthResult.failure(ErrorKind.DEPENDENCY, _UNAVAILABLE)

        if outcome is not SignInOutcome.SUCCESS:
            logger.info("Sign-in refused (%s) for identity %s", outcome.value, identity.id)
            return self._sign_in_failure(outcome)
        return self._complete_sign_in(identity, persistent=persistent)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def send_verification(self, email: str) -> VerificationResult:
        return self.verification.send_code(email)

    def confirm_email(self, email: str, code: str) -> VerificationResult:
        """Redeem a verification code and activate the matching identity."""
        result = self.verification.redeem(email, code)
        if not result.succeeded:
            return result
        try:
            identity = self.store.find_by_email(email)
            if identity is not None and not identity.email_confirmed:
                self.store.confirm_email(identity)
                logger.info("Email confirmed for identity %s", identity.id)
        except IdentityStoreError:
            logger.warning("Verified code but could not activate identity", exc_info=True)
            return VerificationResult.failure(
                ErrorKind.DEPENDENCY, "Code accepted but the account could not be activated. Please try again."
            )
        return result

    # ------------------------------------------------------------------
    # External logins
    # ------------------------------------------------------------------

    def link_external(self, info: ExternalLoginInfo) -> AuthResult:
        if not info.provider or not info.provider_key:
            return AuthResult.failure(ErrorKind.VALIDATION, "Invalid external login.")

        try:
            identity = self.store.find_by_external_login(info.provider, info.provider_key)
        except IdentityStoreError:
            logger.warning("External login lookup failed", exc_info=True)
            return AuthResult.failure(ErrorKind.DEPENDENCY, _UNAVAILABLE)
        if identity is not None:
            return self._external_sign_in(identity)

        address = normalize_email(info.email)
        if not address:
            return AuthResult.failure(ErrorKind.VALIDATION, "The external provider did not supply an email address.")

        created: Optional[Identity] = None
        try:
            identity = self.store.find_by_email(address)
            if identity is None:
                try:
                    identity = created = self.store.create(
                        Identity(
                            email=address,
                            username=external_username(info.provider, address),
                            first_name=info.first_name,
                            last_name=info.last_name,
                            user_image=info.picture,
                            email_confirmed=True,
                        )
                    )
                except DuplicateIdentityError:
                    # A concurrent callback for the same address created it first.
                    logger.info("External login: lost create race for provider %s; re-reading", info.provider)
                    return self._link_after_race(info, address)
                self.store.add_to_role(identity, self.default_role)
            elif not identity.email_confirmed:
                logger.warning("External login refused: existing account %s is unverified", identity.id)
                return AuthResult.failure(ErrorKind.CONFLICT, _UNVERIFIED_EXISTS)
            self.store.add_external_login(identity, info)
        except IdentityStoreError as e:
            logger.warning("External login could not be linked (provider=%s)", info.provider, exc_info=True)
            errors = [_LINK_FAILED, str(e)]
            if created is not None:
                errors.extend(self._delete_quietly(created))
            return AuthResult.failure(ErrorKind.DEPENDENCY, _LINK_FAILED, errors=errors)
        except Exception:
            if created is not None:
                self._delete_quietly(created)
            raise

        logger.info("External login %s linked to identity %s", info.provider, identity.id)
        return self._external_sign_in(identity)

    def _link_after_race(self, info: ExternalLoginInfo, address: str) -> AuthResult:
        """Sign in to the identity a concurrent callback created, linking it if still needed."""
        try:
            identity = self.store.find_by_external_login(info.provider, info.provider_key)
            if identity is None:
                identity = self.store.find_by_email(address)
                if identity is None:
                    return AuthResult.failure(ErrorKind.DEPENDENCY, _LINK_FAILED)
                if not identity.email_confirmed:
                    return AuthResult.failure(ErrorKind.CONFLICT, _UNVERIFIED_EXISTS)
                try:
                    self.store.add_external_login(identity, info)
                except DuplicateIdentityError:
                    identity = self.store.find_by_external_login(info.provider, info.provider_key)
                    if identity is None:
                        return AuthResult.failure(ErrorKind.DEPENDENCY, _LINK_FAILED)
        except IdentityStoreError:
            logger.warning("External login could not be linked after a concurrent create", exc_info=True)
            return AuthResult.failure(ErrorKind.DEPENDENCY, _LINK_FAILED)
        return self._external_sign_in(identity)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _external_sign_in(self, identity: Identity) -> AuthResult:
        # The provider already authenticated the user; no second factor here.
        outcome = self.store.can_sign_in(identity)
        if outcome is not SignInOutcome.SUCCESS:
            return self._sign_in_failure(outcome)
        return self._complete_sign_in(identity, persistent=False)

    def _complete_sign_in(self, identity: Identity, persistent: bool) -> AuthResult:
        warnings = self.claims.sync_display_claims(identity)
        try:
            self.store.update_last_login(identity)
        except IdentityStoreError:
            logger.warning("Could not stamp last_login for identity %s", identity.id, exc_info=True)
        expires_in = self.persistent_token_expire_seconds if persistent else self.token_expire_seconds
        token = self.issue_token(self._token_claims(identity, warnings), expires_in)
        return AuthResult(
            succeeded=True,
            status_code=200,
            token=token,
            user=summarize(identity),
            outcome=SignInOutcome.SUCCESS,
            expires_in=expires_in,
            warnings=warnings,
        )

    def _token_claims(self, identity: Identity, warnings: list[str]) -> dict[str, Any]:
        claims: dict[str, Any] = {
            "sub": identity.id,
            "email": identity.email,
            "name": identity.username,
            "given_name": identity.first_name,
            "family_name": identity.last_name,
            "email_verified": identity.email_confirmed,
        }
        try:
            claims["roles"] = sorted(self.store.get_roles(identity))
            claims.update(self.claims.current_claims(identity))
        except IdentityStoreError:
            logger.warning("Could not read roles/claims for identity %s", identity.id, exc_info=True)
            warnings.append("Token issued without roles.")
        return {k: v for k, v in claims.items() if v is not None}

    def _sign_in_failure(self, outcome: SignInOutcome) -> AuthResult:
        return AuthResult.failure(ErrorKind.AUTHENTICATION, sign_in_message(outcome), outcome=outcome)

    def _roll_back(self, identity: Identity, message: str) -> AuthResult:
        errors = [message, *self._delete_quietly(identity)]
        state = SignUpState.ROLLED_BACK if len(errors) == 1 else None
        return AuthResult.failure(ErrorKind.DEPENDENCY, message, errors=errors, state=state)

    def _delete_quietly(self, identity: Identity) -> list[str]:
        """Compensating delete. Returns error messages instead of raising."""
        try:
            self.store.delete(identity)
        except IdentityStoreError:
            logger.error("Rollback failed: identity %s was left behind", identity.id, exc_info=True)
            return ["Partially created account could not be removed."]
        logger.info("Rolled back identity %s", identity.id)
        return []
