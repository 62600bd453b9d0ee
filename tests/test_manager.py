"""Unit tests for auth/manager.py -- the session state machine end to end.

Covers:
- Login success, failure, unknown principal, disabled principal, lockout
- Counter reset on success; per-origin vs principal-wide lockout policy
- Transparent re-hash when the configured cost changes
- MFA: challenge delivery, success, wrong code, exhaustion, timeout
- Refresh rotation, reuse detection, logout, expiry
- Access token TTL and opt-in revocation check
- Password reset and password change revoke every session
- Storage retry during issuance, including writes that committed before failing, purge
- Both end-to-end scenarios (alice/editor, bob lockout from o1 vs o2)
"""

from __future__ import annotations

import pytest
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
from auth.hashing import CredentialHasher, digest_cost
from auth.manager import AuthSessionManager
from auth.models import Principal, PrincipalStatus, SessionState
from helpers import (
    ALICE_PASSWORD,
    BOB_PASSWORD,
    CAROL_PASSWORD,
    CapturingNotifier,
    FakeClock,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail_login(manager: AuthSessionManager, identifier: str, origin: str, times: int = 1) -> None:
    for _ in range(times):
        with pytest.raises(InvalidCredentials):
            manager.login(identifier, "wrong-password", origin=origin)


def _start_mfa(manager: AuthSessionManager) -> MfaRequired:
    with pytest.raises(MfaRequired) as excinfo:
        manager.login("carol", CAROL_PASSWORD, origin="o1")
    return excinfo.value


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_active_session_and_tokens(
        self, manager: AuthSessionManager, alice: Principal, clock: FakeClock
    ) -> None:
        result = manager.login("alice", ALICE_PASSWORD, origin="o1", user_agent="pytest")
        assert result.session.state(clock()) is SessionState.active
        assert result.tokens.refresh_token.startswith("rt_")
        assert result.tokens.session_id == result.session.id
        stored = manager.sessions.get(result.session.id)
        assert stored.refresh_token_hash is not None
        assert result.tokens.refresh_token not in stored.refresh_token_hash
        assert manager.principals.get("alice").last_login == clock()

    def test_wrong_password(self, manager: AuthSessionManager, alice: Principal) -> None:
        _fail_login(manager, "alice", "o1")
        assert manager.principals.get("alice").failed_attempts == 1

    def test_unknown_principal_same_error(self, manager: AuthSessionManager, alice: Principal) -> None:
        with pytest.raises(InvalidCredentials) as unknown:
            manager.login("mallory", "whatever", origin="o1")
        with pytest.raises(InvalidCredentials) as wrong:
            manager.login("alice", "whatever", origin="o1")
        assert str(unknown.value) == str(wrong.value)

    def test_unknown_principal_is_rate_limited(self, manager: AuthSessionManager) -> None:
        _fail_login(manager, "mallory", "o1", times=5)
        with pytest.raises(AccountLocked):
            manager.login("mallory", "whatever", origin="o1")

    def test_disabled_principal_rejected(self, manager: AuthSessionManager, alice: Principal) -> None:
        manager.principals.set_status("alice", PrincipalStatus.disabled)
        with pytest.raises(InvalidCredentials):
            manager.login("alice", ALICE_PASSWORD, origin="o1")

    def test_rehash_on_cost_change(self, manager: AuthSessionManager, alice: Principal) -> None:
        assert digest_cost(manager.principals.get("alice").credential_hash) == 4
        manager.hasher = CredentialHasher(rounds=5)
        manager.login("alice", ALICE_PASSWORD, origin="o1")
        upgraded = manager.principals.get("alice").credential_hash
        assert digest_cost(upgraded) == 5
        manager.login("alice", ALICE_PASSWORD, origin="o1")


class TestLockout:
    def test_sixth_attempt_locked(self, manager: AuthSessionManager, bob: Principal) -> None:
        _fail_login(manager, "bob", "o1", times=5)
        with pytest.raises(AccountLocked) as excinfo:
            manager.login("bob", BOB_PASSWORD, origin="o1")
        assert excinfo.value.retry_after > 0

    def test_success_resets_counter(self, manager: AuthSessionManager, bob: Principal) -> None:
        _fail_login(manager, "bob", "o1", times=2)
        manager.login("bob", BOB_PASSWORD, origin="o1")
        # Attempts 4-8 are evaluated fresh: five failures, none blocked.
        _fail_login(manager, "bob", "o1", times=5)
        with pytest.raises(AccountLocked):
            manager.login("bob", BOB_PASSWORD, origin="o1")

    def test_lock_lifts_after_retry_after(self, manager: AuthSessionManager, bob: Principal, clock: FakeClock) -> None:
        _fail_login(manager, "bob", "o1", times=5)
        with pytest.raises(AccountLocked) as excinfo:
            manager.login("bob", BOB_PASSWORD, origin="o1")
        clock.advance(excinfo.value.retry_after)
        manager.login("bob", BOB_PASSWORD, origin="o1")

    def test_principal_wide_cap_locks_status(self, manager: AuthSessionManager, bob: Principal) -> None:
        # Four failures from each of five origins: no pair locks, the global cap (20) does.
        for n in range(5):
            _fail_login(manager, "bob", f"o{n}", times=4)
        assert manager.principals.get("bob").status is PrincipalStatus.locked
        with pytest.raises(AccountLocked):
            manager.login("bob", BOB_PASSWORD, origin="fresh-origin")


class TestScenarios:
    def test_alice_editor(self, manager: AuthSessionManager, alice: Principal, clock: FakeClock) -> None:
        result = manager.login("alice", ALICE_PASSWORD, origin="o1")
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert manager.sessions.get(result.session.id).state(clock()) is SessionState.active
        claims = manager.verify_access_token(result.tokens.access_token)
        assert claims.roles == {"editor"}
        assert manager.authorize(claims.roles, "doc:write")
        assert not manager.authorize(claims.roles, "doc:delete")

    def test_bob_lockout_is_per_origin(self, manager: AuthSessionManager, bob: Principal) -> None:
        _fail_login(manager, "bob", "o1", times=5)
        with pytest.raises(AccountLocked) as excinfo:
            manager.login("bob", BOB_PASSWORD, origin="o1")
        assert excinfo.value.retry_after > 0
        # o2 has its own counter; five failures stay under the principal-wide cap.
        result = manager.login("bob", BOB_PASSWORD, origin="o2")
        assert result.principal.identifier == "bob"
        with pytest.raises(AccountLocked):
            manager.login("bob", BOB_PASSWORD, origin="o1")


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


class TestMfa:
    def test_login_requires_second_factor(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier, clock: FakeClock
    ) -> None:
        pending = _start_mfa(manager)
        assert notifier.mfa_codes[-1][0] == "carol"
        session = manager.sessions.get(pending.session_id)
        assert session.state(clock()) is SessionState.pending_mfa
        assert session.refresh_token_hash is None

    def test_correct_code_activates(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier, clock: FakeClock
    ) -> None:
        pending = _start_mfa(manager)
        result = manager.complete_mfa(pending.challenge_id, notifier.last_code())
        assert result.session.id == pending.session_id
        assert result.session.state(clock()) is SessionState.active
        assert result.session.expires_at == clock() + manager.settings.refresh_token_ttl_seconds
        assert manager.refresh(result.tokens.refresh_token).session_id == pending.session_id

    def test_challenge_is_single_use(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier
    ) -> None:
        pending = _start_mfa(manager)
        manager.complete_mfa(pending.challenge_id, notifier.last_code())
        with pytest.raises(MfaFailed):
            manager.complete_mfa(pending.challenge_id, notifier.last_code())

    def test_wrong_code_counts_against_guard(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier
    ) -> None:
        pending = _start_mfa(manager)
        wrong = "000000" if notifier.last_code() != "000000" else "111111"
        with pytest.raises(MfaFailed) as excinfo:
            manager.complete_mfa(pending.challenge_id, wrong)
        assert excinfo.value.reason == "mismatch"
        assert manager.guard.store.get("carol", "o1").failures == 1
        # Still usable with the right code.
        manager.complete_mfa(pending.challenge_id, notifier.last_code())

    def test_attempts_exhausted_revokes_pending_session(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier
    ) -> None:
        pending = _start_mfa(manager)
        wrong = "000000" if notifier.last_code() != "000000" else "111111"
        reasons = []
        for _ in range(manager.settings.mfa_max_attempts):
            with pytest.raises(MfaFailed) as excinfo:
                manager.complete_mfa(pending.challenge_id, wrong)
            reasons.append(excinfo.value.reason)
        assert reasons[-1] == "attempts_exhausted"
        assert manager.sessions.get(pending.session_id).revoked
        with pytest.raises(MfaFailed):
            manager.complete_mfa(pending.challenge_id, notifier.last_code())

    def test_timeout_forces_restart(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier, clock: FakeClock
    ) -> None:
        pending = _start_mfa(manager)
        clock.advance(manager.settings.mfa_code_ttl_seconds)
        with pytest.raises(MfaFailed) as excinfo:
            manager.complete_mfa(pending.challenge_id, notifier.last_code())
        assert excinfo.value.reason == "expired"
        session = manager.sessions.get(pending.session_id)
        assert session.revoked
        assert session.revoked_reason == "mfa_timeout"
        # A fresh login issues a fresh challenge.
        again = _start_mfa(manager)
        assert again.challenge_id != pending.challenge_id
        manager.complete_mfa(again.challenge_id, notifier.last_code())

    def test_code_bound_to_its_challenge(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier
    ) -> None:
        first = _start_mfa(manager)
        first_code = notifier.last_code()
        second = _start_mfa(manager)
        if first_code != notifier.last_code():
            with pytest.raises(MfaFailed):
                manager.complete_mfa(second.challenge_id, first_code)
        manager.complete_mfa(first.challenge_id, first_code)

    def test_unknown_challenge(self, manager: AuthSessionManager) -> None:
        with pytest.raises(MfaFailed) as excinfo:
            manager.complete_mfa("does-not-exist", "123456")
        assert excinfo.value.reason == "unknown_challenge"


# ---------------------------------------------------------------------------
# Refresh / logout / verification
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation_issues_new_pair(self, manager: AuthSessionManager, alice: Principal) -> None:
        first = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        second = manager.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert second.session_id == first.session_id
        assert manager.verify_access_token(second.access_token).session_id == first.session_id

    def test_reuse_revokes_whole_session(self, manager: AuthSessionManager, alice: Principal) -> None:
        first = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        latest = manager.refresh(first.refresh_token)
        with pytest.raises(RefreshReuseDetected) as excinfo:
            manager.refresh(first.refresh_token)
        assert excinfo.value.session_id == first.session_id
        session = manager.sessions.get(first.session_id)
        assert session.revoked
        assert session.revoked_reason == "refresh_reuse"
        # The latest legitimate token dies with the session.
        with pytest.raises(SessionRevoked):
            manager.refresh(latest.refresh_token)

    def test_refresh_after_logout(self, manager: AuthSessionManager, alice: Principal) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        assert manager.logout(tokens.session_id)
        assert not manager.logout(tokens.session_id)
        with pytest.raises(SessionRevoked):
            manager.refresh(tokens.refresh_token)

    def test_refresh_after_expiry(self, manager: AuthSessionManager, alice: Principal, clock: FakeClock) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        clock.advance(manager.settings.refresh_token_ttl_seconds)
        with pytest.raises(SessionExpired):
            manager.refresh(tokens.refresh_token)

    def test_refresh_does_not_extend_session(
        self, manager: AuthSessionManager, alice: Principal, clock: FakeClock
    ) -> None:
        first = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        clock.advance(60)
        second = manager.refresh(first.refresh_token)
        assert second.refresh_expires_at == first.refresh_expires_at

    def test_unknown_refresh_token(self, manager: AuthSessionManager) -> None:
        with pytest.raises(TokenInvalid):
            manager.refresh("rt_not-a-real-token")
        with pytest.raises(TokenInvalid):
            manager.refresh("")

    def test_lost_race_is_reuse(self, manager: AuthSessionManager, alice: Principal) -> None:
        """A rotation that loses the compare-and-swap revokes the session."""
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        original = manager.sessions.rotate_refresh_token

        def lose_race(session_id, old_hash, new_hash, now):
            original(session_id, old_hash, "winner-hash", now)
            return original(session_id, old_hash, new_hash, now)

        manager.sessions.rotate_refresh_token = lose_race
        with pytest.raises(RefreshReuseDetected):
            manager.refresh(tokens.refresh_token)
        assert manager.sessions.get(tokens.session_id).revoked

    def test_disabled_principal_cannot_refresh(self, manager: AuthSessionManager, alice: Principal) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        manager.principals.set_status("alice", PrincipalStatus.disabled)
        with pytest.raises(SessionRevoked):
            manager.refresh(tokens.refresh_token)

    def test_role_changes_apply_at_refresh(self, manager: AuthSessionManager, alice: Principal) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        manager.principals.assign_roles("alice", ["viewer"])
        refreshed = manager.refresh(tokens.refresh_token)
        assert manager.verify_access_token(refreshed.access_token).roles == {"viewer"}


class TestAccessTokens:
    def test_ttl_boundary(self, manager: AuthSessionManager, alice: Principal, clock: FakeClock) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        ttl = manager.settings.access_token_ttl_seconds
        skew = manager.settings.clock_skew_seconds
        manager.verify_access_token(tokens.access_token)
        clock.advance(ttl + skew)
        manager.verify_access_token(tokens.access_token)
        clock.advance(0.001)
        with pytest.raises(TokenExpired):
            manager.verify_access_token(tokens.access_token)

    def test_logout_visible_with_revocation_check(self, manager: AuthSessionManager, alice: Principal) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        manager.logout(tokens.session_id)
        # Signature-only verification still accepts the in-flight token until it expires.
        manager.verify_access_token(tokens.access_token)
        with pytest.raises(SessionRevoked):
            manager.verify_access_token(tokens.access_token, check_revocation=True)

    def test_logout_with_expired_access_token(
        self, manager: AuthSessionManager, alice: Principal, clock: FakeClock
    ) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        clock.advance(manager.settings.access_token_ttl_seconds + manager.settings.clock_skew_seconds + 1)
        with pytest.raises(TokenExpired):
            manager.verify_access_token(tokens.access_token)
        assert manager.logout_with_refresh_token(tokens.refresh_token)
        with pytest.raises(SessionRevoked):
            manager.refresh(tokens.refresh_token)
        with pytest.raises(TokenInvalid):
            manager.logout_with_refresh_token("rt_unknown")

    def test_access_token_never_outlives_session(self, settings, engine, role_store, notifier, clock) -> None:
        from auth.manager import build_auth_manager

        short = build_auth_manager(
            settings.model_copy(update={"refresh_token_ttl_seconds": 60}),
            engine=engine,
            notifier=notifier,
            clock=clock,
        )
        short.register_principal("dave", "dave-password")
        tokens = short.login("dave", "dave-password", origin="o1").tokens
        assert tokens.access_expires_at == tokens.refresh_expires_at == clock() + 60


# ---------------------------------------------------------------------------
# Password reset / change
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_reset_revokes_all_sessions(
        self, manager: AuthSessionManager, alice: Principal, notifier: CapturingNotifier
    ) -> None:
        sessions = [manager.login("alice", ALICE_PASSWORD, origin=f"o{i}").tokens for i in range(3)]
        raw = manager.request_password_reset("alice")
        assert raw == notifier.last_reset_token()
        assert raw.startswith("pr_")
        assert manager.complete_password_reset(raw, "a-brand-new-password") == 3
        for tokens in sessions:
            with pytest.raises(SessionRevoked):
                manager.refresh(tokens.refresh_token)
        with pytest.raises(InvalidCredentials):
            manager.login("alice", ALICE_PASSWORD, origin="o1")
        manager.login("alice", "a-brand-new-password", origin="o1")

    def test_token_single_use(self, manager: AuthSessionManager, alice: Principal) -> None:
        raw = manager.request_password_reset("alice")
        manager.complete_password_reset(raw, "a-brand-new-password")
        with pytest.raises(TokenInvalid):
            manager.complete_password_reset(raw, "another-password")

    def test_token_expires(self, manager: AuthSessionManager, alice: Principal, clock: FakeClock) -> None:
        raw = manager.request_password_reset("alice")
        clock.advance(manager.settings.reset_token_ttl_seconds)
        with pytest.raises(TokenExpired):
            manager.complete_password_reset(raw, "a-brand-new-password")
        manager.login("alice", ALICE_PASSWORD, origin="o1")

    def test_new_request_supersedes_old(self, manager: AuthSessionManager, alice: Principal) -> None:
        old = manager.request_password_reset("alice")
        new = manager.request_password_reset("alice")
        with pytest.raises(TokenInvalid):
            manager.complete_password_reset(old, "a-brand-new-password")
        manager.complete_password_reset(new, "a-brand-new-password")

    def test_unknown_principal_gets_no_token(self, manager: AuthSessionManager, notifier: CapturingNotifier) -> None:
        assert manager.request_password_reset("nobody") is None
        assert notifier.reset_tokens == []

    def test_reset_clears_principal_lock(self, manager: AuthSessionManager, bob: Principal) -> None:
        for n in range(5):
            _fail_login(manager, "bob", f"o{n}", times=4)
        with pytest.raises(AccountLocked):
            manager.login("bob", BOB_PASSWORD, origin="fresh-origin")
        assert manager.principals.get("bob").status is PrincipalStatus.locked

        raw = manager.request_password_reset("bob")
        manager.complete_password_reset(raw, "bob-new-password")
        assert manager.principals.get("bob").status is PrincipalStatus.active
        manager.login("bob", "bob-new-password", origin="fresh-origin")
        manager.login("bob", "bob-new-password", origin="o0")


class TestPasswordChange:
    def test_change_revokes_sessions(self, manager: AuthSessionManager, alice: Principal) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        assert manager.change_password("alice", ALICE_PASSWORD, "changed-password", origin="o1") == 1
        with pytest.raises(SessionRevoked):
            manager.refresh(tokens.refresh_token)
        manager.login("alice", "changed-password", origin="o1")

    def test_wrong_current_password(self, manager: AuthSessionManager, alice: Principal) -> None:
        with pytest.raises(InvalidCredentials):
            manager.change_password("alice", "not-it", "changed-password", origin="o1")
        manager.login("alice", ALICE_PASSWORD, origin="o1")


# ---------------------------------------------------------------------------
# Storage behaviour and maintenance
# ---------------------------------------------------------------------------


class TestStorage:
    def test_session_write_retried(self, manager: AuthSessionManager, alice: Principal) -> None:
        original = manager.sessions.put
        calls = {"n": 0}

        def flaky_put(session):
            calls["n"] += 1
            if calls["n"] < 3:
                raise StorageUnavailable("put_session")
            original(session)

        manager.sessions.put = flaky_put
        result = manager.login("alice", ALICE_PASSWORD, origin="o1")
        assert calls["n"] == 3
        assert manager.sessions.get(result.session.id) is not None

    def test_retries_exhausted(self, manager: AuthSessionManager, alice: Principal) -> None:
        def broken_put(session):
            raise StorageUnavailable("put_session")

        manager.sessions.put = broken_put
        with pytest.raises(StorageUnavailable):
            manager.login("alice", ALICE_PASSWORD, origin="o1")

    def test_guard_outage_fails_closed(self, manager: AuthSessionManager, alice: Principal) -> None:
        def broken_reserve(*args):
            raise StorageUnavailable("reserve_attempt")

        manager.guard.store.reserve = broken_reserve
        with pytest.raises(StorageUnavailable):
            manager.login("alice", ALICE_PASSWORD, origin="o1")

    def test_session_write_committed_before_failure(self, manager: AuthSessionManager, alice: Principal) -> None:
        original = manager.sessions.put
        calls = {"n": 0}

        def put_then_lose_reply(session):
            calls["n"] += 1
            original(session)
            if calls["n"] == 1:
                raise StorageUnavailable("put_session")

        manager.sessions.put = put_then_lose_reply
        result = manager.login("alice", ALICE_PASSWORD, origin="o1")
        assert calls["n"] == 2
        assert manager.refresh(result.tokens.refresh_token).session_id == result.session.id

    def test_activation_committed_before_failure(
        self, manager: AuthSessionManager, carol: Principal, notifier: CapturingNotifier
    ) -> None:
        with pytest.raises(MfaRequired) as excinfo:
            manager.login("carol", CAROL_PASSWORD, origin="o1")
        original = manager.sessions.activate
        calls = {"n": 0}

        def activate_then_lose_reply(*args):
            calls["n"] += 1
            activated = original(*args)
            if calls["n"] == 1:
                raise StorageUnavailable("activate_session")
            return activated

        manager.sessions.activate = activate_then_lose_reply
        result = manager.complete_mfa(excinfo.value.challenge_id, notifier.last_code())
        assert calls["n"] == 2
        assert manager.refresh(result.tokens.refresh_token).session_id == excinfo.value.session_id

    def test_conflicting_session_not_taken_as_committed(self, manager: AuthSessionManager, alice: Principal) -> None:
        calls = {"n": 0}

        def put_conflict(session):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StorageUnavailable("put_session")
            raise IntegrityError("INSERT INTO sessions", {}, Exception("UNIQUE constraint failed"))

        manager.sessions.put = put_conflict
        with pytest.raises(IntegrityError):
            manager.login("alice", ALICE_PASSWORD, origin="o1")

    def test_purge_expired(self, manager: AuthSessionManager, alice: Principal, clock: FakeClock) -> None:
        tokens = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        _fail_login(manager, "alice", "o2")
        clock.advance(manager.settings.refresh_token_ttl_seconds + manager.settings.session_retention_seconds + 1)
        purged = manager.purge_expired()
        assert purged["sessions"] == 1
        assert purged["attempt_counters"] >= 1
        assert manager.sessions.get(tokens.session_id) is None

    def test_revoke_all_sessions(self, manager: AuthSessionManager, alice: Principal) -> None:
        first = manager.login("alice", ALICE_PASSWORD, origin="o1").tokens
        manager.login("alice", ALICE_PASSWORD, origin="o1")
        assert manager.revoke_all_sessions("alice") == 2
        with pytest.raises(SessionRevoked):
            manager.refresh(first.refresh_token)
