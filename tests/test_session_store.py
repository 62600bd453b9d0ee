"""Unit tests for auth/session_store.py and the principal repository in auth/store.py.

Covers:
- Session state derivation (pending_mfa / active / revoked / expired)
- Refresh-token compare-and-swap rotation and rotation history
- Idempotent revocation and revoke_all
- Challenge consume-once and failure counting
- Purge of expired sessions and spent challenges
- Principal CRUD, status and login bookkeeping
"""

from __future__ import annotations

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Challenge, ChallengePurpose, Principal, PrincipalStatus, Session, SessionState
from auth.session_store import SqlChallengeStore, SqlSessionStore
from auth.store import PrincipalStore
from helpers import T0, FakeClock


@pytest.fixture
def sessions(engine: Engine) -> SqlSessionStore:
    return SqlSessionStore(engine)


@pytest.fixture
def challenges(engine: Engine) -> SqlChallengeStore:
    return SqlChallengeStore(engine)


def _session(sid: str = "s1", principal: str = "alice", **kwargs) -> Session:
    values = {"issued_at": T0, "expires_at": T0 + 3600, "refresh_token_hash": f"h-{sid}"}
    values.update(kwargs)
    return Session(id=sid, principal_id=principal, **values)


def _challenge(cid: str = "c1", **kwargs) -> Challenge:
    values = {
        "principal_id": "alice",
        "purpose": ChallengePurpose.mfa,
        "code_hash": f"code-{cid}",
        "expires_at": T0 + 300,
    }
    values.update(kwargs)
    return Challenge(id=cid, **values)


class TestSessionState:
    def test_states(self) -> None:
        assert _session().state(T0) is SessionState.active
        assert _session(mfa_pending=True).state(T0) is SessionState.pending_mfa
        assert _session().state(T0 + 3600) is SessionState.expired
        assert _session(revoked=True).state(T0 + 9999) is SessionState.revoked


class TestSessionStore:
    def test_put_and_get(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session(fingerprint="fp"))
        loaded = sessions.get("s1")
        assert loaded.principal_id == "alice"
        assert loaded.fingerprint == "fp"
        assert sessions.get_by_refresh_hash("h-s1").id == "s1"
        assert sessions.get("missing") is None

    def test_duplicate_id_rejected(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session())
        with pytest.raises(IntegrityError):
            sessions.put(_session(refresh_token_hash="other"))

    def test_rotation_is_compare_and_swap(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session())
        assert sessions.rotate_refresh_token("s1", "h-s1", "h-2", T0)
        assert not sessions.rotate_refresh_token("s1", "h-s1", "h-3", T0)
        assert sessions.get("s1").refresh_token_hash == "h-2"
        assert sessions.find_rotated("h-s1") == "s1"
        assert sessions.find_rotated("h-2") is None

    def test_revoked_session_cannot_rotate(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session())
        sessions.mark_revoked("s1", "logout")
        assert not sessions.rotate_refresh_token("s1", "h-s1", "h-2", T0)

    def test_mark_revoked_is_idempotent(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session())
        assert sessions.mark_revoked("s1", "logout")
        assert not sessions.mark_revoked("s1", "again")
        loaded = sessions.get("s1")
        assert loaded.revoked
        assert loaded.revoked_reason == "logout"

    def test_revoke_all(self, sessions: SqlSessionStore) -> None:
        for sid in ("s1", "s2", "s3"):
            sessions.put(_session(sid))
        sessions.put(_session("s4", principal="bob"))
        sessions.mark_revoked("s3", "logout")
        assert sessions.revoke_all("alice", "password_reset") == 2
        assert all(s.revoked for s in sessions.list_for_principal("alice"))
        assert not sessions.get("s4").revoked

    def test_activate_only_pending(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session(mfa_pending=True, refresh_token_hash=None, expires_at=T0 + 300))
        assert sessions.activate("s1", "h-new", T0 + 3600)
        assert not sessions.activate("s1", "h-other", T0 + 3600)
        loaded = sessions.get("s1")
        assert not loaded.mfa_pending
        assert loaded.expires_at == T0 + 3600
        assert loaded.refresh_token_hash == "h-new"

    def test_purge_expired(self, sessions: SqlSessionStore) -> None:
        sessions.put(_session("old", expires_at=T0 + 10))
        sessions.put(_session("new", expires_at=T0 + 10_000))
        sessions.rotate_refresh_token("old", "h-old", "h-old-2", T0)
        assert sessions.purge_expired(T0 + 100) == 1
        assert sessions.get("old") is None
        assert sessions.find_rotated("h-old") is None
        assert sessions.get("new") is not None


class TestChallengeStore:
    def test_consume_once(self, challenges: SqlChallengeStore) -> None:
        challenges.put(_challenge())
        assert challenges.consume("c1")
        assert not challenges.consume("c1")
        assert challenges.get("c1").consumed

    def test_record_failure_counts(self, challenges: SqlChallengeStore) -> None:
        challenges.put(_challenge())
        assert challenges.record_failure("c1") == 1
        assert challenges.record_failure("c1") == 2
        assert challenges.get("c1").attempts == 2

    def test_lookup_by_hash(self, challenges: SqlChallengeStore) -> None:
        challenges.put(_challenge(purpose=ChallengePurpose.reset))
        found = challenges.get_by_code_hash("code-c1")
        assert found.purpose is ChallengePurpose.reset
        assert challenges.get_by_code_hash("nope") is None

    def test_invalidate_for_principal(self, challenges: SqlChallengeStore) -> None:
        challenges.put(_challenge("r1", purpose=ChallengePurpose.reset))
        challenges.put(_challenge("r2", purpose=ChallengePurpose.reset))
        challenges.put(_challenge("m1"))
        assert challenges.invalidate_for_principal("alice", ChallengePurpose.reset) == 2
        assert not challenges.get("m1").consumed

    def test_purge(self, challenges: SqlChallengeStore) -> None:
        challenges.put(_challenge("expired", expires_at=T0 - 1))
        challenges.put(_challenge("spent"))
        challenges.put(_challenge("live"))
        challenges.consume("spent")
        assert challenges.purge_expired(T0) == 2
        assert challenges.get("live") is not None


class TestPrincipalStore:
    @pytest.fixture
    def principals(self, engine: Engine, clock: FakeClock) -> PrincipalStore:
        return PrincipalStore(engine, clock=clock)

    def test_create_and_get(self, principals: PrincipalStore) -> None:
        principals.create_principal(Principal("alice", credential_hash="h", roles=frozenset({"editor", "viewer"})))
        alice = principals.get("alice")
        assert alice.roles == {"editor", "viewer"}
        assert alice.status is PrincipalStatus.active
        assert alice.created_at == T0
        assert principals.get("nobody") is None

    def test_duplicate_rejected(self, principals: PrincipalStore) -> None:
        principals.create_principal(Principal("alice"))
        with pytest.raises(IntegrityError):
            principals.create_principal(Principal("alice"))

    def test_updates_report_missing(self, principals: PrincipalStore) -> None:
        assert not principals.set_status("ghost", PrincipalStatus.disabled)
        assert not principals.assign_roles("ghost", ["viewer"])

    def test_record_login_clears_lock_mirror(self, principals: PrincipalStore, clock: FakeClock) -> None:
        principals.create_principal(Principal("alice"))
        principals.increment_failed_attempts("alice")
        principals.set_status("alice", PrincipalStatus.locked)
        clock.advance(5)
        principals.record_login("alice")
        alice = principals.get("alice")
        assert alice.failed_attempts == 0
        assert alice.status is PrincipalStatus.active
        assert alice.last_login == T0 + 5

    def test_record_login_keeps_disabled(self, principals: PrincipalStore) -> None:
        principals.create_principal(Principal("alice", status=PrincipalStatus.disabled))
        principals.record_login("alice")
        assert principals.get("alice").status is PrincipalStatus.disabled

    def test_list_and_delete(self, principals: PrincipalStore) -> None:
        principals.create_principal(Principal("bob"))
        principals.create_principal(Principal("alice"))
        assert [p.identifier for p in principals.list_principals()] == ["alice", "bob"]
        assert principals.delete_principal("bob")
        assert not principals.delete_principal("bob")
