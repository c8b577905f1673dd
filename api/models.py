"""
API request and response models for the account service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
The dataclasses in auth/models.py are the domain representation; route
handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# One "@" with something on both sides. The verification code proves the address.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="after")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class SignUpRequest(_EmailBody):
    """Request body for POST /api/v1/accounts/signup."""

    password: str = Field(min_length=8, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class SignInRequest(_EmailBody):
    """Request body for POST /api/v1/accounts/signin."""

    password: str = Field(min_length=1, max_length=255)
    is_persistent: bool = False


class SendVerificationRequest(_EmailBody):
    """Request body for POST /api/v1/accounts/verification/send."""


class RedeemVerificationRequest(_EmailBody):
    """Request body for POST /api/v1/accounts/verification/redeem."""

    code: str = Field(pattern=r"^\d{6}$")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserSummaryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class SignUpResponse(BaseModel):
    """Response for POST /api/v1/accounts/signup.

    token is None when the account must verify its email before signing in
    (state == "pending_sign_in").
    """

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    state: Optional[str] = None
    token: Optional[str] = None
    user: Optional[UserSummaryResponse] = None
    errors: list[str] = []


class SignInResponse(BaseModel):
    """Response for POST /api/v1/accounts/signin."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int = 0
    user: Optional[UserSummaryResponse] = None
    redirect_url: str = "/"


class VerificationResponse(BaseModel):
    """Response for POST /api/v1/accounts/verification/{send,redeem}."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    message: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/accounts/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_confirmed: bool
    roles: list[str]
    claims: dict[str, str]


class ExternalProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
