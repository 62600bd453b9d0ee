"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Stores and the session manager do
the work; the only logic here is derived state (Session.state, Challenge
expiry) that every caller must compute the same way.

Timestamps are POSIX seconds (float) taken from the caller's clock, so the
same record compares identically in SQL and in Python.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PrincipalStatus(str, Enum):
    active = "active"
    # Mirrors a tripped global-principal guard counter. The counter's
    # locked_until is authoritative; this flag is for administrators.
    locked = "locked"
    disabled = "disabled"


class SessionState(str, Enum):
    pending_mfa = "pending_mfa"
    active = "active"
    revoked = "revoked"
    expired = "expired"


class ChallengePurpose(str, Enum):
    mfa = "mfa"
    reset = "reset"


@dataclass
class Principal:
    """An identity that can authenticate.

    identifier is the login name and the stable key every other record refers
    to. credential_hash is a bcrypt digest; None means the principal cannot
    log in with a password.
    """

    identifier: str
    credential_hash: str | None = None
    roles: frozenset[str] = field(default_factory=frozenset)
    status: PrincipalStatus = PrincipalStatus.active
    failed_attempts: int = 0
    last_login: float | None = None
    mfa_enabled: bool = False
    created_at: float | None = None


@dataclass(frozen=True)
class Role:
    identifier: str
    permissions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Permission:
    identifier: str  # e.g. "doc:write", or a wildcard grant "doc:*"
    description: str = ""


@dataclass
class Session:
    """A login session and the hash of its current refresh token.

    mfa_pending sessions have no refresh token yet and expire when their MFA
    challenge does; completing MFA extends expires_at to the full refresh TTL.
    """

    id: str
    principal_id: str
    issued_at: float
    expires_at: float
    fingerprint: str = ""
    refresh_token_hash: str | None = None
    revoked: bool = False
    revoked_reason: str | None = None
    mfa_pending: bool = False

    def state(self, now: float) -> SessionState:
        if self.revoked:
            return SessionState.revoked
        if now >= self.expires_at:
            return SessionState.expired
        if self.mfa_pending:
            return SessionState.pending_mfa
        return SessionState.active


@dataclass
class Challenge:
    """Single-use, short-TTL verification record (MFA code or reset token).

    Only a keyed hash of the code/token is stored.
    """

    id: str
    principal_id: str
    purpose: ChallengePurpose
    code_hash: str
    expires_at: float
    session_id: str | None = None
    origin: str = ""
    attempts: int = 0
    consumed: bool = False

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class AttemptCounter:
    """Failure counter for one (principal_key, origin_key) pair.

    origin_key "*" is the principal-global counter. failures is the number of
    uncleared attempts inside whatever span the store was asked about.
    """

    principal_key: str
    origin_key: str
    failures: int = 0
    last_attempt_at: float = 0.0
    lockout_count: int = 0
    lockout_period_start: float = 0.0
    locked_until: float = 0.0


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    principal_id: str
    roles: frozenset[str]
    session_id: str
    issued_at: float
    expires_at: float
    key_id: str


@dataclass(frozen=True)
class TokenPair:
    """Credentials handed to the client after login, MFA, or refresh.

    refresh_token is the raw value; it is never persisted and cannot be
    recovered later.
    """

    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: float
    refresh_expires_at: float

    def __repr__(self) -> str:
        return f"TokenPair(session_id={self.session_id!r}, access_expires_at={self.access_expires_at})"


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    session: Session
    tokens: TokenPair
