"""
auth/session_store.py -- Session and challenge persistence.

SessionStore / ChallengeStore are the interfaces the session manager consumes.
SqlSessionStore / SqlChallengeStore implement them on SQLAlchemy Core and are
what ships; a host with its own record store implements the same protocols.

Atomicity requirements (the SQL implementations meet them with conditional
UPDATEs, i.e. compare-and-swap at the storage layer):
  rotate_refresh_token -- succeeds for exactly one caller per old hash. The
      old hash moves to rotated_refresh_tokens in the same transaction so a
      later presentation of it is recognisable as reuse.
  activate             -- pending_mfa -> active happens once.
  consume (challenge)  -- a challenge is spent exactly once.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.engine import Engine

from auth.models import Challenge, ChallengePurpose, Session
from auth.schema import challenges, rotated_refresh_tokens, sessions, storage_errors

# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    def get(self, session_id: str) -> Session | None: ...

    def get_by_refresh_hash(self, token_hash: str) -> Session | None: ...

    def find_rotated(self, token_hash: str) -> str | None: ...

    def put(self, session: Session) -> None: ...

    def activate(self, session_id: str, refresh_token_hash: str, expires_at: float) -> bool: ...

    def rotate_refresh_token(self, session_id: str, old_hash: str, new_hash: str, now: float) -> bool: ...

    def mark_revoked(self, session_id: str, reason: str) -> bool: ...

    def revoke_all(self, principal_id: str, reason: str) -> int: ...

    def list_for_principal(self, principal_id: str) -> list[Session]: ...

    def purge_expired(self, before: float) -> int: ...


class ChallengeStore(Protocol):
    def put(self, challenge: Challenge) -> None: ...

    def get(self, challenge_id: str) -> Challenge | None: ...

    def get_by_code_hash(self, code_hash: str) -> Challenge | None: ...

    def consume(self, challenge_id: str) -> bool: ...

    def record_failure(self, challenge_id: str) -> int: ...

    def invalidate_for_principal(self, principal_id: str, purpose: ChallengePurpose) -> int: ...

    def purge_expired(self, before: float) -> int: ...


# ---------------------------------------------------------------------------
# SQL implementations
# ---------------------------------------------------------------------------


class SqlSessionStore:
    """SessionStore backed by the shared SQL engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, session_id: str) -> Session | None:
        with storage_errors("get_session"), self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_refresh_hash(self, token_hash: str) -> Session | None:
        with storage_errors("get_session_by_refresh"), self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.refresh_token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_rotated(self, token_hash: str) -> str | None:
        """Return the session id a rotated-out refresh hash belonged to."""
        with storage_errors("find_rotated_refresh"), self.engine.connect() as conn:
            return conn.execute(
                select(rotated_refresh_tokens.c.session_id).where(rotated_refresh_tokens.c.token_hash == token_hash)
            ).scalar()

    def put(self, session: Session) -> None:
        """Insert a new session record. Raises IntegrityError on a duplicate id."""
        with storage_errors("put_session"), self.engine.connect() as conn:
            conn.execute(
                sessions.insert().values(
                    id=session.id,
                    principal_id=session.principal_id,
                    issued_at=session.issued_at,
                    expires_at=session.expires_at,
                    fingerprint=session.fingerprint,
                    refresh_token_hash=session.refresh_token_hash,
                    revoked=session.revoked,
                    revoked_reason=session.revoked_reason,
                    mfa_pending=session.mfa_pending,
                )
            )
            conn.commit()

    def activate(self, session_id: str, refresh_token_hash: str, expires_at: float) -> bool:
        """Move a pending_mfa session to active. False if it was not pending."""
        with storage_errors("activate_session"), self.engine.connect() as conn:
            result = conn.execute(
                update(sessions)
                .where(
                    (sessions.c.id == session_id)
                    & (sessions.c.mfa_pending.is_(True))
                    & (sessions.c.revoked.is_(False))
                )
                .values(mfa_pending=False, refresh_token_hash=refresh_token_hash, expires_at=expires_at)
            )
            conn.commit()
        return result.rowcount == 1

    def rotate_refresh_token(self, session_id: str, old_hash: str, new_hash: str, now: float) -> bool:
        """Swap old_hash for new_hash iff old_hash is still current and the session is live.

        Returns False when another caller already rotated (or revoked) first.
        """
        with storage_errors("rotate_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(
                update(sessions)
                .where(
                    (sessions.c.id == session_id)
                    & (sessions.c.refresh_token_hash == old_hash)
                    & (sessions.c.revoked.is_(False))
                )
                .values(refresh_token_hash=new_hash)
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                rotated_refresh_tokens.insert().values(token_hash=old_hash, session_id=session_id, rotated_at=now)
            )
        return True

    def mark_revoked(self, session_id: str, reason: str) -> bool:
        """Revoke a session. Idempotent; returns True only on the live -> revoked edge."""
        with storage_errors("revoke_session"), self.engine.connect() as conn:
            result = conn.execute(
                update(sessions)
                .where((sessions.c.id == session_id) & (sessions.c.revoked.is_(False)))
                .values(revoked=True, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_all(self, principal_id: str, reason: str) -> int:
        with storage_errors("revoke_all_sessions"), self.engine.connect() as conn:
            result = conn.execute(
                update(sessions)
                .where((sessions.c.principal_id == principal_id) & (sessions.c.revoked.is_(False)))
                .values(revoked=True, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def list_for_principal(self, principal_id: str) -> list[Session]:
        with storage_errors("list_sessions"), self.engine.connect() as conn:
            rows = conn.execute(
                sessions.select().where(sessions.c.principal_id == principal_id).order_by(sessions.c.issued_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def purge_expired(self, before: float) -> int:
        """Delete sessions that expired before `before`, with their rotation history."""
        with storage_errors("purge_sessions"), self.engine.begin() as conn:
            stale = select(sessions.c.id).where(sessions.c.expires_at < before)
            conn.execute(delete(rotated_refresh_tokens).where(rotated_refresh_tokens.c.session_id.in_(stale)))
            result = conn.execute(delete(sessions).where(sessions.c.expires_at < before))
        return result.rowcount


class SqlChallengeStore:
    """ChallengeStore backed by the shared SQL engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def put(self, challenge: Challenge) -> None:
        with storage_errors("put_challenge"), self.engine.connect() as conn:
            conn.execute(
                challenges.insert().values(
                    id=challenge.id,
                    principal_id=challenge.principal_id,
                    purpose=challenge.purpose.value,
                    code_hash=challenge.code_hash,
                    expires_at=challenge.expires_at,
                    session_id=challenge.session_id,
                    origin=challenge.origin,
                    attempts=challenge.attempts,
                    consumed=challenge.consumed,
                )
            )
            conn.commit()

    def get(self, challenge_id: str) -> Challenge | None:
        with storage_errors("get_challenge"), self.engine.connect() as conn:
            row = conn.execute(challenges.select().where(challenges.c.id == challenge_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def get_by_code_hash(self, code_hash: str) -> Challenge | None:
        with storage_errors("get_challenge_by_hash"), self.engine.connect() as conn:
            row = conn.execute(challenges.select().where(challenges.c.code_hash == code_hash)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def consume(self, challenge_id: str) -> bool:
        """Spend the challenge. True for exactly one caller."""
        with storage_errors("consume_challenge"), self.engine.connect() as conn:
            result = conn.execute(
                update(challenges)
                .where((challenges.c.id == challenge_id) & (challenges.c.consumed.is_(False)))
                .values(consumed=True)
            )
            conn.commit()
        return result.rowcount == 1

    def record_failure(self, challenge_id: str) -> int:
        """Atomically count a wrong code; returns the new attempt count."""
        with storage_errors("record_challenge_failure"), self.engine.begin() as conn:
            conn.execute(
                update(challenges)
                .where(challenges.c.id == challenge_id)
                .values(attempts=challenges.c.attempts + 1)
            )
            attempts = conn.execute(select(challenges.c.attempts).where(challenges.c.id == challenge_id)).scalar()
        return int(attempts or 0)

    def invalidate_for_principal(self, principal_id: str, purpose: ChallengePurpose) -> int:
        """Spend every outstanding challenge of one purpose for a principal."""
        with storage_errors("invalidate_challenges"), self.engine.connect() as conn:
            result = conn.execute(
                update(challenges)
                .where(
                    (challenges.c.principal_id == principal_id)
                    & (challenges.c.purpose == purpose.value)
                    & (challenges.c.consumed.is_(False))
                )
                .values(consumed=True)
            )
            conn.commit()
        return result.rowcount

    def purge_expired(self, before: float) -> int:
        with storage_errors("purge_challenges"), self.engine.connect() as conn:
            result = conn.execute(
                delete(challenges).where((challenges.c.expires_at < before) | (challenges.c.consumed.is_(True)))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        principal_id=row.principal_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        fingerprint=row.fingerprint,
        refresh_token_hash=row.refresh_token_hash,
        revoked=bool(row.revoked),
        revoked_reason=row.revoked_reason,
        mfa_pending=bool(row.mfa_pending),
    )


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        id=row.id,
        principal_id=row.principal_id,
        purpose=ChallengePurpose(row.purpose),
        code_hash=row.code_hash,
        expires_at=row.expires_at,
        session_id=row.session_id,
        origin=row.origin,
        attempts=row.attempts,
        consumed=bool(row.consumed),
    )
