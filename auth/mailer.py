"""
auth/mailer.py -- Verification email rendering and dispatch.

MailDispatcher is the seam the verification flow depends on:
    send(to_address, subject, plain_body, html_body) -> None
It returns once the mail provider has *accepted* the message (not delivered
it) and raises MailDispatchError otherwise. No retries here -- retry policy
belongs to whoever asked for the email.

Implementations:
  HttpMailDispatcher -- POSTs JSON to a Resend-style HTTP API with requests.
  LogMailDispatcher  -- debug-mode stand-in used when no MAIL_API_KEY is set;
                        writes the message to the log instead of sending it.

Templates live in auth/templates/ and are rendered with Jinja2 (autoescape on
for the HTML part).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

from auth.errors import MailDispatchError

logger = logging.getLogger("accounts.auth.mailer")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)

VERIFICATION_SUBJECT = "Verify your email address"


class MailDispatcher(Protocol):
    def send(self, to_address: str, subject: str, plain_body: str, html_body: str) -> None: ...


def render_verification_email(email: str, code: str, verify_page_url: str, ttl_seconds: int) -> tuple[str, str, str]:
    """Return (subject, plain_body, html_body) for a verification code email.

    The subject never contains the code.
    """
    params = urlencode({"email": email, "code": code}, quote_via=quote)
    context = {
        "code": code,
        "verify_url": f"{verify_page_url}?{params}",
        "ttl_minutes": max(1, ttl_seconds // 60),
    }
    plain = _templates.get_template("verification_email.txt").render(**context)
    html = _templates.get_template("verification_email.html").render(**context)
    return VERIFICATION_SUBJECT, plain, html


class HttpMailDispatcher:
    """Send mail through an HTTP API (Resend request format).

    A single requests.Session is kept for connection pooling. Redirects are
    capped low -- this is one known endpoint.
    """

    def __init__(self, api_url: str, api_key: str, sender: str, timeout: float = 10.0) -> None:
        self.api_url = api_url
        self.sender = sender
        self.timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers["Authorization"] = f"Bearer {api_key}"

    def send(self, to_address: str, subject: str, plain_body: str, html_body: str) -> None:
        try:
            resp = self._session.post(
                self.api_url,
                json={
                    "from": self.sender,
                    "to": [to_address],
                    "subject": subject,
                    "text": plain_body,
                    "html": html_body,
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Mail dispatch failed: %s", e)
            raise MailDispatchError("Mail provider did not accept the message.") from e

    def close(self) -> None:
        self._session.close()


class LogMailDispatcher:
    """Development dispatcher: log the message instead of sending it.

    Only wired in when DEBUG=true and no mail API key is configured. The body
    contains the code, so it goes to DEBUG level.
    """

    def send(self, to_address: str, subject: str, plain_body: str, html_body: str) -> None:
        logger.info("Mail (not sent, debug mode) to=%s subject=%r", to_address, subject)
        logger.debug("Mail body:\n%s", plain_body)

    def close(self) -> None:
        pass
