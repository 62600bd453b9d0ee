"""
tests/helpers.py -- Test doubles and seed data shared by conftest and test modules.
"""

from __future__ import annotations

from auth.models import Principal
from auth.store import RoleStore
from core.config import Settings

T0 = 1_700_000_000.0
TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"

ALICE_PASSWORD = "alice-correct-horse"
BOB_PASSWORD = "bob-battery-staple"
CAROL_PASSWORD = "carol-second-factor"


class FakeClock:
    """Callable clock returning a controllable POSIX timestamp."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CapturingNotifier:
    """Notifier that keeps what it was asked to deliver."""

    def __init__(self) -> None:
        self.mfa_codes: list[tuple[str, str]] = []
        self.reset_tokens: list[tuple[str, str]] = []

    def send_mfa_code(self, principal: Principal, code: str, expires_at: float) -> None:
        self.mfa_codes.append((principal.identifier, code))

    def send_password_reset(self, principal: Principal, token: str, expires_at: float) -> None:
        self.reset_tokens.append((principal.identifier, token))

    def last_code(self) -> str:
        return self.mfa_codes[-1][1]

    def last_reset_token(self) -> str:
        return self.reset_tokens[-1][1]


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "bcrypt_rounds": 4,
        "issuance_retry_backoff_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


def seed_catalog(roles: RoleStore) -> None:
    """doc:* permissions plus editor / viewer / admin roles."""
    for perm in ("doc:read", "doc:write", "doc:delete", "doc:*", "*"):
        roles.define_permission(perm)
    roles.define_role("editor", ["doc:read", "doc:write"])
    roles.define_role("viewer", ["doc:read"])
    roles.define_role("admin", ["*"])
