"""
auth/oauth.py -- External identity providers (authlib, OpenID Connect).

A provider is enabled when every credential it needs is configured. The same
check drives both registration with the authlib registry at import time and
GET /accounts/providers, so the list a client sees always matches what the
callback route will accept.

Security notes:
  [H1] get_external_login_info() only accepts a provider-verified email.
       External sign-in links accounts by email; an address the provider never
       verified could be a victim's address typed in by an attacker.

  The OAuth state parameter travels in the Starlette session
  (SessionMiddleware); authlib checks it on the callback.

Providers:
  google -- Google's discovery document.
  oidc   -- Any OIDC issuer by discovery URL (Okta, Azure AD, Keycloak, ...).

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from authlib.integrations.starlette_client import OAuth

from auth.models import ExternalLoginInfo
from core.config import Settings, get_settings

logger = logging.getLogger("accounts.auth.oauth")

_GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
_SCOPE = "openid email profile"


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    label: str
    client_id: str
    client_secret: str
    discovery_url: str


def configured_providers(settings: Settings) -> list[ProviderConfig]:
    """Return the providers whose credentials are all present, in display order."""
    candidates = [
        ProviderConfig(
            "google", "Google", settings.google_client_id, settings.google_client_secret, _GOOGLE_DISCOVERY_URL
        ),
        ProviderConfig(
            "oidc",
            settings.oidc_display_name,
            settings.oidc_client_id,
            settings.oidc_client_secret,
            settings.oidc_discovery_url,
        ),
    ]
    return [p for p in candidates if p.client_id and p.client_secret and p.discovery_url]


def build_registry(settings: Settings) -> OAuth:
    registry = OAuth()
    for provider in configured_providers(settings):
        registry.register(
            name=provider.name,
            client_id=provider.client_id,
            client_secret=provider.client_secret,
            server_metadata_url=provider.discovery_url,
            client_kwargs={"scope": _SCOPE},
        )
        logger.info("External provider registered: %s (%s)", provider.name, provider.label)
    return registry


oauth = build_registry(get_settings())


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    return [{"name": p.name, "label": p.label} for p in configured_providers(get_settings())]


# ---------------------------------------------------------------------------
# Callback claims [H1]
# ---------------------------------------------------------------------------


def get_external_login_info(provider: str, token: dict) -> ExternalLoginInfo:
    """Turn an authorization-code token response into an ExternalLoginInfo.

    authlib parses the id_token of both supported providers into
    token["userinfo"] (sub, email, email_verified, given_name, family_name,
    picture).

    Raises:
        ValueError: unknown provider, no userinfo, an email the provider has
            not verified, or a missing sub/email. The callback route treats
            any of these as a failed external sign-in.
    """
    if provider not in ("google", "oidc"):
        raise ValueError(f"Unsupported external provider: {provider!r}")

    claims = token.get("userinfo") or {}
    if not claims:
        raise ValueError(f"{provider}: token response carried no userinfo")

    # An absent email_verified claim counts as unverified.
    if claims.get("email_verified") is not True:
        raise ValueError(f"{provider}: email address is not verified by the provider")

    subject = claims.get("sub")
    email = claims.get("email")
    if not subject or not email:
        raise ValueError(f"{provider}: userinfo lacks sub or email")

    return ExternalLoginInfo(
        provider=provider,
        provider_key=str(subject),
        email=email,
        first_name=claims.get("given_name"),
        last_name=claims.get("family_name"),
        picture=claims.get("picture"),
    )
