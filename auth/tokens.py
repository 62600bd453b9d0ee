"""
auth/tokens.py -- Access-token signing/verification and opaque token helpers.

Security design decisions:
  Access tokens: python-jose JWT, HS256, signed with the current key from the
       KeyRegistry. The key id travels in the JWT header ("kid"); verification
       looks it up in an immutable KeySet snapshot. Claims: sub (principal),
       sid (session), roles, iat, nbf, exp, jti, typ="access".

       exp/nbf are checked here against the injected clock (with a small
       clock-skew leeway) rather than inside jose, so each failure surfaces as
       its own exception: TokenExpired is retryable via refresh, everything
       else (TokenSignatureInvalid, TokenNotYetValid, UnknownKeyId,
       TokenMalformed) is not.

  Opaque tokens: refresh tokens, reset tokens and MFA codes are random values
       handed to the client once. Only HMAC-SHA256(SECRET_KEY, raw) is stored.
       The hash is deterministic, so the store looks records up by hash in
       O(1); the values carry 256 bits of entropy so bcrypt's slowness buys
       nothing here.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
import uuid
from collections.abc import Callable, Iterable
from typing import Any

from jose import JWTError, jwt

from auth.errors import (
    TokenExpired,
    TokenMalformed,
    TokenNotYetValid,
    TokenSignatureInvalid,
    UnknownKeyId,
)
from auth.keys import KeyRegistry
from auth.models import AccessClaims

logger = logging.getLogger("gatehouse.auth")

_TOKEN_TYPE = "access"

# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Issue and verify signed access tokens.

    Usage:
        issuer = TokenIssuer(get_key_registry(), leeway=5)
        token = issuer.issue({"sub": "alice", "sid": sid, "roles": ["editor"]}, ttl=300)
        claims = issuer.verify(token)      # AccessClaims, or raises
    """

    def __init__(
        self,
        registry: KeyRegistry,
        leeway: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.leeway = leeway
        self.clock = clock

    def issue(self, claims: dict[str, Any], ttl: float, not_after: float | None = None) -> str:
        """Sign claims with the current key. Returns the compact JWT.

        not_after caps the expiry -- access tokens pass their session's
        expires_at so a token never outlives its session.
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = self.clock()
        expires_at = now + ttl
        if not_after is not None:
            expires_at = min(expires_at, not_after)
        key = self.registry.snapshot().current
        payload = dict(claims)
        payload.update(
            {
                "iat": int(now),
                "nbf": int(now),
                # Float exp keeps sub-second TTLs and the session clamp exact.
                "exp": expires_at,
                "jti": secrets.token_urlsafe(12),
                "typ": payload.get("typ", _TOKEN_TYPE),
            }
        )
        return jwt.encode(payload, key.secret, algorithm=key.algorithm, headers={"kid": key.kid})

    def verify(self, token: str) -> AccessClaims:
        """Verify signature, key id, type and time window; return AccessClaims."""
        payload, kid = self.decode(token)
        if payload.get("typ") != _TOKEN_TYPE:
            raise TokenMalformed("Token is not an access token.")
        try:
            return AccessClaims(
                principal_id=str(payload["sub"]),
                roles=frozenset(payload.get("roles", ())),
                session_id=str(payload["sid"]),
                issued_at=float(payload["iat"]),
                expires_at=float(payload["exp"]),
                key_id=kid,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformed("Token is missing required claims.") from exc

    def decode(self, token: str) -> tuple[dict[str, Any], str]:
        """Return (payload, kid) for a token signed by a trusted key."""
        if not token or not isinstance(token, str):
            raise TokenMalformed()
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenMalformed() from exc
        kid = header.get("kid")
        if not kid:
            raise UnknownKeyId("Token header carries no key id.")

        keyset = self.registry.snapshot()
        key = keyset.find(kid)
        if key is None:
            raise UnknownKeyId()
        if header.get("alg") != key.algorithm:
            raise TokenSignatureInvalid("Token algorithm does not match its key.")

        try:
            payload = jwt.decode(
                token,
                key.secret,
                algorithms=[key.algorithm],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                },
            )
        except JWTError as exc:
            raise TokenSignatureInvalid() from exc

        now = self.clock()
        exp = payload.get("exp")
        nbf = payload.get("nbf")
        if not isinstance(exp, (int, float)):
            raise TokenMalformed("Token has no expiry.")
        if now > exp + self.leeway:
            raise TokenExpired()
        if isinstance(nbf, (int, float)) and now + self.leeway < nbf:
            raise TokenNotYetValid()
        return payload, kid


def access_claims(principal_id: str, session_id: str, roles: Iterable[str]) -> dict[str, Any]:
    """Claims dict for an access token (roles are a sorted snapshot)."""
    return {"sub": principal_id, "sid": session_id, "roles": sorted(roles)}


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """rt_<43 urlsafe chars>: 256 bits of entropy."""
    return f"rt_{secrets.token_urlsafe(32)}"


def generate_reset_token() -> str:
    return f"pr_{secrets.token_urlsafe(32)}"


def generate_mfa_code(digits: int = 6) -> str:
    return f"{secrets.randbelow(10**digits):0{digits}d}"


def new_id() -> str:
    return uuid.uuid4().hex


def hash_token(raw: str, secret_key: str, context: str = "") -> str:
    """Return HMAC-SHA256(secret_key, context|raw) as hex.

    context binds short codes to their record (an MFA code hash is only valid
    for its own challenge id).
    """
    message = f"{context}|{raw}" if context else raw
    return hmac.new(secret_key.encode(), message.encode(), hashlib.sha256).hexdigest()


def tokens_match(expected_hash: str | None, raw: str, secret_key: str, context: str = "") -> bool:
    """Constant-time comparison of a raw token against a stored hash."""
    if not expected_hash or not raw:
        return False
    return hmac.compare_digest(expected_hash, hash_token(raw, secret_key, context))


def client_fingerprint(origin: str, user_agent: str = "") -> str:
    """SHA-256 of origin and user agent; stored instead of the raw values."""
    return hashlib.sha256(f"{origin}|{user_agent}".encode()).hexdigest()
