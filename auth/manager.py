"""
auth/manager.py -- Auth session manager: login, MFA, refresh, logout, reset.

Orchestrates the guard, hasher, token issuer, session store and RBAC
evaluator. Host request handlers call the public methods below and map the
AuthError subclasses they raise onto their transport.

Session states:
    pending_mfa --complete_mfa--> active --logout / reset / reuse--> revoked
    pending_mfa --challenge timeout--> revoked (login must restart)
    active --(expires_at passes)--> expired   (passive, no write)

Revocation vs latency:
  Access tokens are verified by signature and expiry alone, so a logout does
  not reach tokens already in flight until they expire. Exposure is bounded
  by ACCESS_TOKEN_TTL_SECONDS (default 5 minutes). The authoritative check
  happens at refresh, where the session record is always read, and on
  verify_access_token(check_revocation=True), which sensitive operations (password
  change, role administration) opt into at the cost of one store read.

Refresh rotation:
  Refresh tokens are single-use. rotate_refresh_token() is a compare-and-swap
  on the stored hash, so two concurrent refreshes with the same token cannot
  both succeed. A hash that was rotated out and is presented again is
  treated as theft: the whole session is revoked and RefreshReuseDetected is
  raised. Tokens issued before the reuse die with the session.

Storage failures:
  Guard checks and revocation checks fail closed (StorageUnavailable
  propagates and nothing is issued). Writing a new session during issuance
  is retried with exponential backoff before giving up; a retry that finds
  its own earlier write already committed counts as success. Rotation is not
  retried; a retried compare-and-swap could misread its own success as reuse.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountLocked,
    InvalidCredentials,
    MfaFailed,
    MfaRequired,
    RefreshReuseDetected,
    SessionExpired,
    SessionRevoked,
    StorageUnavailable,
    TokenExpired,
    TokenInvalid,
)
from auth.guard import AttemptDecision, BruteForceGuard, GuardPolicy, SqlAttemptStore
from auth.hashing import CredentialHasher
from auth.keys import KeyRegistry
from auth.models import (
    AccessClaims,
    Challenge,
    ChallengePurpose,
    LoginResult,
    Principal,
    PrincipalStatus,
    Session,
    SessionState,
    TokenPair,
)
from auth.notify import LogNotifier, Notifier
from auth.rbac import RbacEvaluator
from auth.schema import make_engine
from auth.session_store import ChallengeStore, SessionStore, SqlChallengeStore, SqlSessionStore
from auth.store import PrincipalStore, RoleStore
from auth.tokens import (
    TokenIssuer,
    access_claims,
    client_fingerprint,
    generate_mfa_code,
    generate_refresh_token,
    generate_reset_token,
    hash_token,
    new_id,
    tokens_match,
)
from core.config import Settings, get_settings

logger = logging.getLogger("gatehouse.auth")

T = TypeVar("T")


class AuthSessionManager:
    """Credential/session engine consumed by request handlers.

    Usage:
        manager = build_auth_manager(get_settings())
        result = manager.login("alice", "s3cret-pass", origin="203.0.113.7")
        claims = manager.verify_access_token(result.tokens.access_token)
        manager.authorize(claims.roles, "doc:write")
        pair = manager.refresh(result.tokens.refresh_token)
        manager.logout(claims.session_id)
    """

    def __init__(
        self,
        settings: Settings,
        principals: PrincipalStore,
        sessions: SessionStore,
        challenges: ChallengeStore,
        guard: BruteForceGuard,
        hasher: CredentialHasher,
        issuer: TokenIssuer,
        rbac: RbacEvaluator,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.principals = principals
        self.sessions = sessions
        self.challenges = challenges
        self.guard = guard
        self.hasher = hasher
        self.issuer = issuer
        self.rbac = rbac
        self.notifier = notifier or LogNotifier()
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Registration / administration
    # ------------------------------------------------------------------

    def register_principal(
        self,
        identifier: str,
        secret: str,
        roles: Iterable[str] = (),
        mfa_enabled: bool = False,
    ) -> Principal:
        """Create a principal with a freshly hashed secret.

        Raises sqlalchemy.exc.IntegrityError if the identifier is taken.
        """
        principal = Principal(
            identifier=identifier,
            credential_hash=self.hasher.hash(secret),
            roles=frozenset(roles),
            mfa_enabled=mfa_enabled,
            created_at=self.clock(),
        )
        self.principals.create_principal(principal)
        return principal

    def revoke_all_sessions(self, identifier: str, reason: str = "admin") -> int:
        count = self.sessions.revoke_all(identifier, reason)
        logger.info("Revoked %d session(s) for %r (%s)", count, identifier, reason)
        return count

    # ------------------------------------------------------------------
    # Login and MFA
    # ------------------------------------------------------------------

    def login(self, identifier: str, secret: str, origin: str, user_agent: str = "") -> LoginResult:
        """Authenticate with a password.

        Returns LoginResult for principals without MFA. Raises MfaRequired
        (carrying the challenge id) when the principal has MFA enabled, and
        AccountLocked / InvalidCredentials / StorageUnavailable otherwise.
        Every branch that reaches the hasher reports its outcome to the guard.
        """
        decision = self.guard.check_and_record_attempt(identifier, origin)
        if not decision.allowed:
            raise AccountLocked(decision.retry_after)

        principal = self.principals.get(identifier)
        if principal is None or principal.credential_hash is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            self.hasher.burn(secret)
            self._record_failure(decision, None)
            raise InvalidCredentials()

        result = self.hasher.check(secret, principal.credential_hash)
        if not result.valid or principal.status is PrincipalStatus.disabled:
            self._record_failure(decision, principal)
            raise InvalidCredentials()

        self.guard.record_outcome(decision, success=True)
        if result.needs_rehash:
            self.principals.update_credential(identifier, self.hasher.hash(secret))
            logger.info("Upgraded credential hash for %r to cost %d", identifier, self.hasher.rounds)

        if principal.mfa_enabled:
            self._start_mfa(principal, origin, user_agent)

        session, refresh_raw = self._open_session(principal.identifier, origin, user_agent)
        self.principals.record_login(identifier)
        logger.info("Login succeeded for %r (session %s)", identifier, session.id)
        return LoginResult(principal=principal, session=session, tokens=self._mint(principal, session, refresh_raw))

    def complete_mfa(self, challenge_id: str, code: str) -> LoginResult:
        """Verify the second factor for a pending login and activate its session."""
        challenge = self.challenges.get(challenge_id)
        if challenge is None or challenge.purpose is not ChallengePurpose.mfa or challenge.consumed:
            raise MfaFailed("unknown_challenge")

        decision = self.guard.check_and_record_attempt(challenge.principal_id, challenge.origin)
        if not decision.allowed:
            raise AccountLocked(decision.retry_after)

        now = self.clock()
        if challenge.is_expired(now):
            self.guard.record_outcome(decision, success=False)
            self._abandon_mfa(challenge, "mfa_timeout")
            logger.info("MFA challenge timed out for %r", challenge.principal_id)
            raise MfaFailed("expired")

        if not tokens_match(challenge.code_hash, code, self.settings.secret_key, context=challenge.id):
            attempts = self.challenges.record_failure(challenge.id)
            self._record_failure(decision, self.principals.get(challenge.principal_id))
            if attempts >= self.settings.mfa_max_attempts:
                self._abandon_mfa(challenge, "mfa_failed")
                logger.warning("MFA attempts exhausted for %r", challenge.principal_id)
                raise MfaFailed("attempts_exhausted")
            raise MfaFailed("mismatch")

        if not self.challenges.consume(challenge.id):
            # A concurrent request spent the code first.
            self.guard.record_outcome(decision, success=False)
            raise MfaFailed("unknown_challenge")
        self.guard.record_outcome(decision, success=True)

        principal = self.principals.get(challenge.principal_id)
        if principal is None or principal.status is PrincipalStatus.disabled:
            self.sessions.mark_revoked(challenge.session_id, "principal_disabled")
            raise InvalidCredentials()

        refresh_raw = generate_refresh_token()
        refresh_hash = self._hash(refresh_raw)
        expires_at = self.clock() + self.settings.refresh_token_ttl_seconds
        activated = self._persist(
            "activate_session",
            self.sessions.activate,
            challenge.session_id,
            refresh_hash,
            expires_at,
            landed=lambda: self._session_landed(challenge.session_id, principal.identifier, refresh_hash, False),
        )
        session = self.sessions.get(challenge.session_id) if activated else None
        if session is None:
            raise MfaFailed("session_invalid")
        self.principals.record_login(principal.identifier)
        logger.info("MFA login completed for %r (session %s)", principal.identifier, session.id)
        return LoginResult(principal=principal, session=session, tokens=self._mint(principal, session, refresh_raw))

    # ------------------------------------------------------------------
    # Refresh / logout / verification
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: new access + refresh token, old one spent."""
        if not refresh_token:
            raise TokenInvalid()
        token_hash = self._hash(refresh_token)
        session = self.sessions.get_by_refresh_hash(token_hash)
        if session is None:
            reused_session = self.sessions.find_rotated(token_hash)
            if reused_session is not None:
                self._revoke_for_reuse(reused_session)
            raise TokenInvalid("Unknown refresh token.")

        state = session.state(self.clock())
        if state is SessionState.revoked:
            raise SessionRevoked()
        if state is SessionState.expired:
            raise SessionExpired()
        if state is SessionState.pending_mfa:
            raise TokenInvalid("Session has not completed MFA.")
        if not tokens_match(session.refresh_token_hash, refresh_token, self.settings.secret_key):
            raise TokenInvalid()

        principal = self.principals.get(session.principal_id)
        if principal is None or principal.status is PrincipalStatus.disabled:
            self.sessions.mark_revoked(session.id, "principal_disabled")
            raise SessionRevoked()

        new_raw = generate_refresh_token()
        if not self.sessions.rotate_refresh_token(session.id, token_hash, self._hash(new_raw), self.clock()):
            # Lost the compare-and-swap: someone else spent this token first.
            self._revoke_for_reuse(session.id)
        session.refresh_token_hash = self._hash(new_raw)
        return self._mint(principal, session, new_raw)

    def logout(self, session_id: str) -> bool:
        """Revoke a session. Returns False if it was already revoked or unknown."""
        revoked = self.sessions.mark_revoked(session_id, "logout")
        if revoked:
            logger.info("Session %s logged out", session_id)
        return revoked

    def logout_with_refresh_token(self, refresh_token: str) -> bool:
        """Revoke the session a refresh token belongs to. No access token needed.

        Raises TokenInvalid for tokens that do not name a current session.
        Returns False if the session was already revoked.
        """
        session = self.sessions.get_by_refresh_hash(self._hash(refresh_token)) if refresh_token else None
        if session is None or not tokens_match(session.refresh_token_hash, refresh_token, self.settings.secret_key):
            raise TokenInvalid("Unknown refresh token.")
        return self.logout(session.id)

    def verify_access_token(self, token: str, check_revocation: bool = False) -> AccessClaims:
        """Verify an access token.

        Without check_revocation this is signature + expiry only (no I/O).
        With it, the parent session is read and must still be live.
        """
        claims = self.issuer.verify(token)
        if check_revocation:
            session = self.sessions.get(claims.session_id)
            if session is None or session.principal_id != claims.principal_id:
                raise TokenInvalid("Token refers to an unknown session.")
            state = session.state(self.clock())
            if state is SessionState.revoked:
                raise SessionRevoked()
            if state is SessionState.expired:
                raise TokenExpired()
        return claims

    def authorize(self, principal_roles: Iterable[str], required_permission: str) -> bool:
        return self.rbac.authorize(principal_roles, required_permission)

    # ------------------------------------------------------------------
    # Password reset / change
    # ------------------------------------------------------------------

    def request_password_reset(self, identifier: str) -> str | None:
        """Issue a single-use reset token and hand it to the notifier.

        Returns the raw token, or None for unknown/disabled principals. Hosts
        should respond identically either way.
        """
        principal = self.principals.get(identifier)
        if principal is None or principal.status is PrincipalStatus.disabled:
            logger.info("Password reset requested for unknown or disabled principal")
            return None
        # One outstanding reset token per principal.
        self.challenges.invalidate_for_principal(identifier, ChallengePurpose.reset)
        raw = generate_reset_token()
        expires_at = self.clock() + self.settings.reset_token_ttl_seconds
        self.challenges.put(
            Challenge(
                id=new_id(),
                principal_id=identifier,
                purpose=ChallengePurpose.reset,
                code_hash=self._hash(raw),
                expires_at=expires_at,
            )
        )
        self.notifier.send_password_reset(principal, raw, expires_at)
        logger.info("Password reset token issued for %r", identifier)
        return raw

    def complete_password_reset(self, token: str, new_secret: str) -> int:
        """Consume a reset token, set the new secret, revoke every session.

        Returns the number of sessions revoked.
        """
        challenge = self.challenges.get_by_code_hash(self._hash(token)) if token else None
        if challenge is None or challenge.purpose is not ChallengePurpose.reset or challenge.consumed:
            raise TokenInvalid("Unknown or already used reset token.")
        if challenge.is_expired(self.clock()):
            self.challenges.consume(challenge.id)
            raise TokenExpired("Reset token has expired.")
        new_hash = self.hasher.hash(new_secret)
        if not self.challenges.consume(challenge.id):
            raise TokenInvalid("Unknown or already used reset token.")

        self.principals.update_credential(challenge.principal_id, new_hash)
        self.guard.reset_principal(challenge.principal_id)
        principal = self.principals.get(challenge.principal_id)
        if principal is not None and principal.status is PrincipalStatus.locked:
            self.principals.set_status(principal.identifier, PrincipalStatus.active)
        revoked = self.sessions.revoke_all(challenge.principal_id, "password_reset")
        logger.warning("Password reset completed for %r; %d session(s) revoked", challenge.principal_id, revoked)
        return revoked

    def change_password(self, identifier: str, current_secret: str, new_secret: str, origin: str) -> int:
        """Verify the current secret, store the new one, revoke every session."""
        decision = self.guard.check_and_record_attempt(identifier, origin)
        if not decision.allowed:
            raise AccountLocked(decision.retry_after)
        principal = self.principals.get(identifier)
        if principal is None or not self.hasher.verify(current_secret, principal.credential_hash or ""):
            self._record_failure(decision, principal)
            raise InvalidCredentials()
        self.guard.record_outcome(decision, success=True)
        self.principals.update_credential(identifier, self.hasher.hash(new_secret))
        revoked = self.sessions.revoke_all(identifier, "password_change")
        logger.info("Password changed for %r; %d session(s) revoked", identifier, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> dict[str, int]:
        """Garbage-collect records past expiry plus the retention window."""
        now = self.clock()
        retention_cutoff = now - self.settings.session_retention_seconds
        counters_cutoff = now - max(self.guard.policy.window_seconds, self.guard.policy.lockout_period_seconds)
        purged = {
            "sessions": self.sessions.purge_expired(retention_cutoff),
            "challenges": self.challenges.purge_expired(now),
            "attempt_counters": self.guard.store.purge(counters_cutoff),
        }
        logger.info("Purged %s", purged)
        return purged

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _hash(self, raw: str) -> str:
        return hash_token(raw, self.settings.secret_key)

    def _record_failure(self, decision: AttemptDecision, principal: Principal | None) -> None:
        outcome = self.guard.record_outcome(decision, success=False)
        if principal is None:
            return
        self.principals.increment_failed_attempts(principal.identifier)
        if outcome.principal_locked and principal.status is PrincipalStatus.active:
            self.principals.set_status(principal.identifier, PrincipalStatus.locked)

    def _open_session(self, principal_id: str, origin: str, user_agent: str) -> tuple[Session, str]:
        now = self.clock()
        refresh_raw = generate_refresh_token()
        session = Session(
            id=new_id(),
            principal_id=principal_id,
            issued_at=now,
            expires_at=now + self.settings.refresh_token_ttl_seconds,
            fingerprint=client_fingerprint(origin, user_agent),
            refresh_token_hash=self._hash(refresh_raw),
        )
        self._persist(
            "put_session",
            self.sessions.put,
            session,
            landed=lambda: self._session_landed(session.id, principal_id, session.refresh_token_hash, False),
        )
        return session, refresh_raw

    def _start_mfa(self, principal: Principal, origin: str, user_agent: str) -> None:
        """Create a pending session plus challenge, deliver the code, raise MfaRequired."""
        now = self.clock()
        expires_at = now + self.settings.mfa_code_ttl_seconds
        session = Session(
            id=new_id(),
            principal_id=principal.identifier,
            issued_at=now,
            expires_at=expires_at,
            fingerprint=client_fingerprint(origin, user_agent),
            mfa_pending=True,
        )
        self._persist(
            "put_session",
            self.sessions.put,
            session,
            landed=lambda: self._session_landed(session.id, principal.identifier, None, True),
        )
        challenge_id = new_id()
        code = generate_mfa_code()
        self.challenges.put(
            Challenge(
                id=challenge_id,
                principal_id=principal.identifier,
                purpose=ChallengePurpose.mfa,
                code_hash=hash_token(code, self.settings.secret_key, context=challenge_id),
                expires_at=expires_at,
                session_id=session.id,
                origin=origin,
            )
        )
        self.notifier.send_mfa_code(principal, code, expires_at)
        raise MfaRequired(challenge_id=challenge_id, session_id=session.id, expires_at=expires_at)

    def _abandon_mfa(self, challenge: Challenge, reason: str) -> None:
        self.challenges.consume(challenge.id)
        if challenge.session_id:
            self.sessions.mark_revoked(challenge.session_id, reason)

    def _revoke_for_reuse(self, session_id: str) -> None:
        self.sessions.mark_revoked(session_id, "refresh_reuse")
        logger.warning("SECURITY: refresh token reuse detected; session %s revoked", session_id)
        raise RefreshReuseDetected(session_id)

    def _mint(self, principal: Principal, session: Session, refresh_raw: str) -> TokenPair:
        now = self.clock()
        ttl = self.settings.access_token_ttl_seconds
        token = self.issuer.issue(
            access_claims(principal.identifier, session.id, principal.roles),
            ttl=ttl,
            not_after=session.expires_at,
        )
        return TokenPair(
            access_token=token,
            refresh_token=refresh_raw,
            session_id=session.id,
            access_expires_at=min(now + ttl, session.expires_at),
            refresh_expires_at=session.expires_at,
        )

    def _persist(self, operation: str, fn: Callable[..., T], *args, landed: Callable[[], bool] | None = None) -> T:
        """Run a storage write, retrying StorageUnavailable with exponential backoff.

        A storage failure can be reported after the write committed. On a
        retry, landed() tells whether the earlier attempt already made the
        change; if it did, the retry's conflict (IntegrityError) or no-op
        (False) counts as success.
        """
        attempts = self.settings.issuance_retry_attempts
        delay = self.settings.issuance_retry_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                result = fn(*args)
            except StorageUnavailable:
                if attempt == attempts:
                    raise
                logger.warning("Retrying %s after storage failure (attempt %d/%d)", operation, attempt, attempts)
                self.sleep(delay)
                delay *= 2
                continue
            except IntegrityError:
                if attempt > 1 and landed is not None and landed():
                    logger.info("%s had already committed before the storage failure", operation)
                    return None
                raise
            if result is False and attempt > 1 and landed is not None and landed():
                logger.info("%s had already committed before the storage failure", operation)
                return True
            return result
        raise StorageUnavailable(operation)

    def _session_landed(self, session_id: str, principal_id: str, refresh_hash: str | None, mfa_pending: bool) -> bool:
        stored = self.sessions.get(session_id)
        return (
            stored is not None
            and not stored.revoked
            and stored.principal_id == principal_id
            and stored.refresh_token_hash == refresh_hash
            and stored.mfa_pending == mfa_pending
        )


def build_auth_manager(
    settings: Settings | None = None,
    engine: Engine | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], float] = time.time,
    registry: KeyRegistry | None = None,
) -> AuthSessionManager:
    """Wire every component from settings onto one shared engine."""
    settings = settings or get_settings()
    engine = engine or make_engine(settings.database_url, timeout=settings.storage_timeout_seconds)
    roles = RoleStore(engine)
    return AuthSessionManager(
        settings=settings,
        principals=PrincipalStore(engine, clock=clock),
        sessions=SqlSessionStore(engine),
        challenges=SqlChallengeStore(engine),
        guard=BruteForceGuard(SqlAttemptStore(engine), GuardPolicy.from_settings(settings), clock=clock),
        hasher=CredentialHasher(rounds=settings.bcrypt_rounds),
        issuer=TokenIssuer(
            registry or KeyRegistry.from_settings(settings),
            leeway=settings.clock_skew_seconds,
            clock=clock,
        ),
        rbac=RbacEvaluator(
            roles,
            cache_size=settings.role_cache_size,
            refresh_interval=settings.role_catalog_refresh_seconds,
        ),
        notifier=notifier,
        clock=clock,
    )
