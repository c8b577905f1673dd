"""
auth/verification.py -- One-time email verification codes.

States of an attempt:  requested -> sent -> redeemed | expired | invalid

send_code():
  1. Reject blank addresses.
  2. Generate a code, render the email, hand it to the mail dispatcher.
  3. Only after the dispatcher accepted the message, store the code with a
     TTL. A failed dispatch leaves no code behind -- the user never saw one.
  A new code for the same address replaces the previous one.

redeem():
  Compare-and-delete happens inside CodeCache.redeem() under one lock, so
  two concurrent attempts with the right code cannot both succeed. A wrong
  code does not consume the live one; the user may retry until it expires.

Codes are never logged.
"""

from __future__ import annotations

import logging

from auth.codes import CodeGenerator
from auth.errors import ErrorKind, MailDispatchError
from auth.mailer import MailDispatcher, render_verification_email
from auth.models import VerificationResult, normalize_email
from cache.store import CodeCache, CodeMatch

logger = logging.getLogger("accounts.auth.verification")

DEFAULT_CODE_TTL_SECONDS = 5 * 60

REASON_EXPIRED_OR_MISSING = "expired_or_missing"
REASON_MISMATCH = "mismatch"

_INVALID_CODE_MESSAGE = "Invalid or expired verification code."


class VerificationOrchestrator:
    def __init__(
        self,
        cache: CodeCache,
        mailer: MailDispatcher,
        generator: CodeGenerator | None = None,
        code_ttl_seconds: int = DEFAULT_CODE_TTL_SECONDS,
        verify_page_url: str = "http://localhost:3000/verify-email",
    ) -> None:
        self.cache = cache
        self.mailer = mailer
        self.generator = generator or CodeGenerator()
        self.code_ttl_seconds = code_ttl_seconds
        self.verify_page_url = verify_page_url

    def send_code(self, email: str) -> VerificationResult:
        """Email a fresh code to the address and remember it for code_ttl_seconds."""
        address = normalize_email(email)
        if not address:
            return VerificationResult.failure(ErrorKind.VALIDATION, "Recipient email address is required.")

        code = self.generator.generate()
        subject, plain, html = render_verification_email(address, code, self.verify_page_url, self.code_ttl_seconds)
        try:
            self.mailer.send(address, subject, plain, html)
        except MailDispatchError:
            logger.warning("Verification email could not be dispatched")
            return VerificationResult.failure(ErrorKind.DEPENDENCY, "Failed to send verification email.")

        self.cache.put(address, code, self.code_ttl_seconds)
        logger.info("Verification code issued (ttl=%ss)", self.code_ttl_seconds)
        return VerificationResult(succeeded=True, message="Verification email sent successfully.")

    def redeem(self, email: str, code: str) -> VerificationResult:
        """Check a submitted code. Success consumes it; a mismatch does not."""
        address = normalize_email(email)
        submitted = (code or "").strip()
        if not address or not submitted:
            return VerificationResult.failure(ErrorKind.VALIDATION, "Email and code are required.")

        match = self.cache.redeem(address, submitted)
        if match is CodeMatch.MISSING:
            return VerificationResult.failure(
                ErrorKind.EXPIRED_OR_INVALID_CODE, _INVALID_CODE_MESSAGE, reason=REASON_EXPIRED_OR_MISSING
            )
        if match is CodeMatch.MISMATCH:
            return VerificationResult.failure(
                ErrorKind.EXPIRED_OR_INVALID_CODE, _INVALID_CODE_MESSAGE, reason=REASON_MISMATCH
            )
        return VerificationResult(succeeded=True, message="Verification successful.")
