"""
core/config.py -- Account service settings (pydantic-settings).

Every environment read goes through Settings; other modules call
get_settings() and never touch os.environ themselves. Field names map to
upper-case env vars (token_expire_seconds -> TOKEN_EXPIRE_SECONDS) and may
also come from a .env file in the working directory.

get_settings() is lru_cached: the first call builds Settings, every later call
returns that same object. Tests that need different values set env vars
before the first import (see tests/conftest.py) or patch attributes on the
cached instance.

Startup checks (model validators):
  [M6] SECRET_KEY must be at least 32 characters; it signs every access token
       and the session cookie.
  [M7] Without DEBUG=true a missing SECRET_KEY stops startup. With DEBUG=true
       a random key is generated and a warning logged.
  DEFAULT_ROLE must be one of SEED_ROLES.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accounts.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'accounts.db'}"

_MIN_SECRET_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Environment-backed settings. Every field has a development default."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "accounts"
    jwt_audience: str = "accounts-clients"
    token_expire_seconds: int = 3600
    # "Remember me" sign-ins get a longer-lived token.
    persistent_token_expire_seconds: int = 14 * 24 * 3600
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    verification_code_ttl_seconds: int = 300
    code_purge_interval_seconds: int = 600
    verification_page_url: str = "http://localhost:3000/verify-email"

    # ------------------------------------------------------------------
    # Mail (Resend-style HTTP API; empty key means log-only in debug mode)
    # ------------------------------------------------------------------

    mail_api_url: str = "https://api.resend.com/emails"
    mail_api_key: str = ""
    mail_sender: str = "no-reply@localhost"
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # External providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    signin_rate_limit: str = "10/minute"
    verification_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Accounts policy
    # ------------------------------------------------------------------

    default_role: str = "User"
    seed_roles: list[str] = ["Admin", "User"]
    # When False, sign-up ends in pending_sign_in and password sign-in is
    # refused until the email has been verified.
    allow_unconfirmed_sign_in: bool = True
    # Seeded on startup when both are set.
    admin_email: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Apply the SECRET_KEY policy [M6][M7]. A generated dev key changes on every restart."""
        if not self.secret_key and not self.debug:
            raise ValueError(
                "SECRET_KEY is not set. Provide one via the environment or .env, "
                "or set DEBUG=true for a throwaway development key."
            )
        if not self.secret_key:
            self.secret_key = secrets.token_hex(32)
            logger.warning("DEBUG mode: generated a temporary SECRET_KEY; issued tokens die with this process")
        if len(self.secret_key) < _MIN_SECRET_KEY_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_KEY_LENGTH} characters.")
        return self

    @model_validator(mode="after")
    def validate_default_role(self) -> "Settings":
        """Sign-up assigns DEFAULT_ROLE, so it has to be a seeded role."""
        if self.default_role not in self.seed_roles:
            raise ValueError(f"DEFAULT_ROLE {self.default_role!r} is not listed in SEED_ROLES.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call."""
    return Settings()
