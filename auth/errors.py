"""
auth/errors.py -- Error taxonomy for the credential/session engine.

Every failure the core reports is a distinct AuthError subclass with a stable
machine-readable `code`. Callers branch on the class (or the code) to decide
whether to retry, re-authenticate, or alert the user -- nothing is collapsed
into a generic failure.

  TokenExpired         -- retryable: obtain a new access token via refresh.
  TokenInvalid (+subs) -- not retryable: signature, key id, nbf, format.
  SessionExpired       -- re-authenticate.
  SessionRevoked       -- re-authenticate.
  RefreshReuseDetected -- security event; the session is already revoked.
  StorageUnavailable   -- transient; the check it interrupted failed closed.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication and authorization failures."""

    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidCredentials(AuthError):
    # Same error for unknown principal and wrong secret -- no enumeration.
    code = "invalid_credentials"
    message = "Invalid identifier or password."


class AccountLocked(AuthError):
    """Too many failed attempts; retry_after is seconds until the lock lifts."""

    code = "account_locked"
    message = "Too many failed attempts."

    def __init__(self, retry_after: float) -> None:
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(f"Too many failed attempts. Retry in {int(self.retry_after) + 1} seconds.")


class MfaRequired(AuthError):
    """Password accepted; a second factor must be presented for challenge_id."""

    code = "mfa_required"
    message = "A second authentication factor is required."

    def __init__(self, challenge_id: str, session_id: str, expires_at: float) -> None:
        self.challenge_id = challenge_id
        self.session_id = session_id
        self.expires_at = expires_at
        super().__init__()


class MfaFailed(AuthError):
    code = "mfa_failed"
    message = "Second factor verification failed."

    def __init__(self, reason: str = "mismatch") -> None:
        self.reason = reason
        super().__init__()


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token has expired."


class TokenInvalid(AuthError):
    code = "token_invalid"
    message = "Token is invalid."


class TokenSignatureInvalid(TokenInvalid):
    code = "token_signature_invalid"
    message = "Token signature verification failed."


class TokenNotYetValid(TokenInvalid):
    code = "token_not_yet_valid"
    message = "Token is not yet valid."


class UnknownKeyId(TokenInvalid):
    code = "token_unknown_key"
    message = "Token was signed with an unknown or retired key."


class TokenMalformed(TokenInvalid):
    code = "token_malformed"
    message = "Token could not be parsed."


class SessionRevoked(AuthError):
    code = "session_revoked"
    message = "Session has been revoked."


class SessionExpired(AuthError):
    code = "session_expired"
    message = "Session has expired."


class RefreshReuseDetected(AuthError):
    """A rotated refresh token was presented again; the session is revoked."""

    code = "refresh_reuse_detected"
    message = "Refresh token reuse detected; the session has been revoked."

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__()


class PermissionDenied(AuthError):
    code = "permission_denied"
    message = "Permission denied."

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(f"Permission denied: {permission}")


class StorageUnavailable(AuthError):
    code = "storage_unavailable"
    message = "Credential storage is unavailable."

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Credential storage is unavailable ({operation}).")
