"""
api/routes/v1/auth.py -- Login, MFA, refresh, logout and password REST endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; tokens or MFA challenge
  POST /api/v1/auth/mfa                      -- complete an MFA challenge
  POST /api/v1/auth/refresh                  -- rotate a refresh token
  POST /api/v1/auth/logout                   -- revoke a session by access or refresh token; clears cookie
  POST /api/v1/auth/password-reset           -- request a reset token (always 202)
  POST /api/v1/auth/password-reset/complete  -- set a new password with a reset token
  POST /api/v1/auth/password                 -- change password (requires live session)
  GET  /api/v1/auth/me                       -- identity carried by the token
  GET  /api/v1/auth/authorize?permission=    -- RBAC check for the token's roles

Security:
  [H2] POST /login carries a coarse per-IP slowapi limit on top of the
       per-principal brute-force guard in auth/guard.py.
  [C1] Timing equalization for unknown principals happens inside
       AuthSessionManager.login() -- never short-circuit before calling it.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Password reset responds identically for known and unknown identifiers.

Handlers are plain `def`: FastAPI runs them in its worker threadpool, so
bcrypt (which releases the GIL) never blocks the event loop. AuthError
subclasses propagate to the handler registered in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthorizeResponse,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    MfaChallengeResponse,
    MfaRequest,
    PasswordChange,
    PasswordResetComplete,
    PasswordResetRequest,
    RefreshRequest,
    SessionsRevokedResponse,
    TokenResponse,
)
from auth.dependencies import get_auth_manager, get_current_claims, get_live_claims
from auth.errors import MfaRequired
from auth.manager import AuthSessionManager
from auth.models import AccessClaims, TokenPair
from core.config import get_settings

# Auth policy:
# - POST /auth/login, /auth/mfa, /auth/refresh:        public -- they mint tokens
# - POST /auth/password-reset, /password-reset/complete: public -- token-gated
# - POST /auth/logout:                                 access token, or a refresh token in the body
# - GET /auth/me, GET /auth/authorize:                  requires auth (get_current_claims)
# - POST /auth/password:                                requires a live session (get_live_claims)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse, responses={202: {"model": MfaChallengeResponse}})
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with identifier and password.

    200 with a token pair (and the access_token cookie) on success.
    202 with a challenge id when the principal has MFA enabled.
    401 invalid_credentials / 429 account_locked otherwise.
    """
    manager = get_auth_manager(request)
    try:
        result = manager.login(body.identifier, body.password, origin=_origin(request), user_agent=_user_agent(request))
    except MfaRequired as exc:
        resp = JSONResponse(
            status_code=202,
            content=MfaChallengeResponse(
                challenge_id=exc.challenge_id,
                expires_in=max(0, int(exc.expires_at - manager.clock())),
            ).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _token_response(manager, result.tokens)


@router.post("/auth/mfa", response_model=TokenResponse)
def complete_mfa(request: Request, body: MfaRequest) -> JSONResponse:
    """Present the second factor for a pending login."""
    manager = get_auth_manager(request)
    result = manager.complete_mfa(body.challenge_id, body.code)
    return _token_response(manager, result.tokens)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent.

    Presenting an already-rotated token revokes the whole session (409).
    """
    manager = get_auth_manager(request)
    return _token_response(manager, manager.refresh(body.refresh_token))


@router.post("/auth/password-reset", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    get_auth_manager(request).request_password_reset(body.identifier)
    return MessageResponse(message="If the account exists, a reset token has been sent.")


@router.post("/auth/password-reset/complete", response_model=SessionsRevokedResponse)
def complete_password_reset(request: Request, body: PasswordResetComplete) -> SessionsRevokedResponse:
    """Set a new password. Every session of the principal is revoked."""
    revoked = get_auth_manager(request).complete_password_reset(body.token, body.new_password)
    return SessionsRevokedResponse(message="Password updated.", sessions_revoked=revoked)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> JSONResponse:
    """Revoke a session and clear the cookie.

    A refresh_token in the body names the session directly and works after
    the access token has expired. Without one, a valid access token is required.
    """
    manager = get_auth_manager(request)
    if body is not None and body.refresh_token:
        manager.logout_with_refresh_token(body.refresh_token)
    else:
        manager.logout(get_current_claims(request).session_id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie("access_token")
    return resp


@router.post("/auth/password", response_model=SessionsRevokedResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    claims: AccessClaims = Depends(get_live_claims),
) -> JSONResponse:
    """Change the caller's password. All sessions, including this one, are revoked."""
    revoked = get_auth_manager(request).change_password(
        claims.principal_id, body.current_password, body.new_password, origin=_origin(request)
    )
    resp = JSONResponse(
        content=SessionsRevokedResponse(message="Password changed.", sessions_revoked=revoked).model_dump()
    )
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    """Return identity information carried by the access token."""
    return MeResponse.from_claims(claims)


@router.get("/auth/authorize", response_model=AuthorizeResponse)
def authorize(
    request: Request,
    permission: str = Query(min_length=1, max_length=255),
    claims: AccessClaims = Depends(get_current_claims),
) -> AuthorizeResponse:
    """Report whether the token's roles grant permission. Always 200."""
    allowed = get_auth_manager(request).authorize(claims.roles, permission)
    return AuthorizeResponse(permission=permission, allowed=allowed)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _origin(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "")


def set_auth_cookie(response: JSONResponse, token: str, max_age: int) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
        max_age=max(1, max_age),
    )


def _token_response(manager: AuthSessionManager, pair: TokenPair) -> JSONResponse:
    body = TokenResponse.from_pair(pair, manager.clock())
    resp = JSONResponse(status_code=200, content=body.model_dump())
    set_auth_cookie(resp, pair.access_token, body.expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
