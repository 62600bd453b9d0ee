"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AccessClaims, TokenPair

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255)
    # Passwords are not stripped: whitespace is part of the secret.
    password: str = Field(min_length=1, max_length=1024, json_schema_extra={"format": "password"})


class MfaRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa."""

    model_config = ConfigDict(str_strip_whitespace=True)

    challenge_id: str = Field(min_length=1, max_length=64)
    code: str = Field(min_length=1, max_length=16)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=256)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout.

    A refresh token here identifies the session without an access token, so a
    client whose access token has already expired can still log out.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=256)


class PasswordResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=1, max_length=255)


class PasswordResetComplete(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=8, max_length=1024)


class PasswordChange(BaseModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=8, max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Access + refresh token pair returned by login, MFA and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: str

    @classmethod
    def from_pair(cls, pair: TokenPair, now: float) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=max(0, int(pair.access_expires_at - now)),
            refresh_expires_in=max(0, int(pair.refresh_expires_at - now)),
            session_id=pair.session_id,
        )


class MfaChallengeResponse(BaseModel):
    """Returned (HTTP 202) when the password was accepted but MFA is required."""

    model_config = ConfigDict(frozen=True)

    challenge_id: str
    expires_in: int


class MeResponse(BaseModel):
    """Identity carried by the presented access token."""

    model_config = ConfigDict(frozen=True)

    principal_id: str
    session_id: str
    roles: list[str]
    expires_at: float

    @classmethod
    def from_claims(cls, claims: AccessClaims) -> "MeResponse":
        return cls(
            principal_id=claims.principal_id,
            session_id=claims.session_id,
            roles=sorted(claims.roles),
            expires_at=claims.expires_at,
        )


class AuthorizeResponse(BaseModel):
    """Response for GET /api/v1/auth/authorize."""

    model_config = ConfigDict(frozen=True)

    permission: str
    allowed: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class SessionsRevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


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

    status: str = "ok"
    version: str
