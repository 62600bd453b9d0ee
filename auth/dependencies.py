"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens are read in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. JWT cookie ("access_token") -- set by POST /auth/login for browsers.

get_current_claims() verifies the token (signature + expiry, no I/O) and
returns AccessClaims. get_live_claims() additionally reads the session
record, for sensitive routes that must not accept a token from a session
that has been logged out. require_permission(p) wraps get_current_claims()
and raises HTTP 403 unless one of the token's roles grants p.

AuthError -> HTTP status mapping lives here too (AUTH_ERROR_STATUS) so the
app-level exception handler and these dependencies agree.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import (
    AccountLocked,
    AuthError,
    InvalidCredentials,
    MfaFailed,
    MfaRequired,
    PermissionDenied,
    RefreshReuseDetected,
    SessionExpired,
    SessionRevoked,
    StorageUnavailable,
    TokenExpired,
    TokenInvalid,
)
from auth.manager import AuthSessionManager
from auth.models import AccessClaims

AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidCredentials: 401,
    MfaFailed: 401,
    TokenExpired: 401,
    TokenInvalid: 401,
    SessionExpired: 401,
    SessionRevoked: 401,
    MfaRequired: 401,
    AccountLocked: 429,
    PermissionDenied: 403,
    RefreshReuseDetected: 409,
    StorageUnavailable: 503,
}


def auth_error_status(exc: AuthError) -> int:
    """HTTP status for an AuthError, resolved through the class hierarchy."""
    for cls in type(exc).__mro__:
        if cls in AUTH_ERROR_STATUS:
            return AUTH_ERROR_STATUS[cls]
    return 401


def to_http_exception(exc: AuthError) -> HTTPException:
    status = auth_error_status(exc)
    headers: dict[str, str] = {}
    if status == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, AccountLocked):
        headers["Retry-After"] = str(int(exc.retry_after) + 1)
    return HTTPException(
        status_code=status,
        detail={"code": exc.code, "message": str(exc)},
        headers=headers or None,
    )


def get_auth_manager(request: Request) -> AuthSessionManager:
    return request.app.state.auth


def extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get("access_token") or None


def _claims(request: Request, check_revocation: bool) -> AccessClaims:
    token = extract_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return get_auth_manager(request).verify_access_token(token, check_revocation=check_revocation)
    except AuthError as exc:
        raise to_http_exception(exc) from exc


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    return _claims(request, check_revocation=False)


def get_live_claims(request: Request) -> AccessClaims:
    """Like get_current_claims(), but also rejects tokens of revoked sessions."""
    return _claims(request, check_revocation=True)


def require_permission(permission: str) -> Callable[..., AccessClaims]:
    """Dependency factory: 401 if unauthenticated, 403 unless permission is granted.

    Use as a FastAPI dependency:
        @router.post("/docs")
        def route(claims: AccessClaims = Depends(require_permission("doc:write"))): ...
    """

    def dependency(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
        try:
            get_auth_manager(request).rbac.require(claims.roles, permission)
        except AuthError as exc:
            raise to_http_exception(exc) from exc
        return claims

    return dependency
