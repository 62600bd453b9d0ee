"""
auth/keys.py -- Process-wide, append-only signing-key registry.

Rotation procedure:
  1. registry.rotate(SigningKey(kid="k2", secret=...)) appends the key and
     makes it current. New tokens carry kid="k2" in their JWT header.
  2. Tokens signed with the previous `trusted_previous` keys keep verifying
     until they expire, so a rotation never invalidates a token issued a
     moment earlier.
  3. Keys older than that fall out of the trusted window. Tokens that still
     carry their kid fail with UnknownKeyId.

Keys are never removed or replaced in place; a kid names exactly one secret
for the life of the process. Readers never see the live list -- snapshot()
returns an immutable KeySet, and TokenIssuer verifies against whichever
snapshot was current when verification started.

For multi-worker deployments every worker builds the same registry from
SIGNING_KEYS, so rotation is a config change plus a rolling restart.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field
from functools import lru_cache

from core.config import Settings, get_settings


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str = field(repr=False)
    algorithm: str = "HS256"


@dataclass(frozen=True)
class KeySet:
    """Immutable snapshot of trusted keys, newest first."""

    version: int
    keys: tuple[SigningKey, ...]

    @property
    def current(self) -> SigningKey:
        return self.keys[0]

    def find(self, kid: str) -> SigningKey | None:
        for key in self.keys:
            if key.kid == kid:
                return key
        return None


class KeyRegistry:
    """Append-only registry of signing keys with an explicit rotate() API."""

    def __init__(self, keys: list[SigningKey], trusted_previous: int = 2) -> None:
        if not keys:
            raise ValueError("KeyRegistry needs at least one signing key")
        if trusted_previous < 0:
            raise ValueError("trusted_previous must be >= 0")
        self._lock = threading.Lock()
        self._history: list[SigningKey] = []
        self._trusted_previous = trusted_previous
        self._snapshot = KeySet(version=0, keys=())
        for key in keys:
            self._append(key)

    def _append(self, key: SigningKey) -> KeySet:
        if any(k.kid == key.kid for k in self._history):
            raise ValueError(f"Signing key id {key.kid!r} is already registered")
        self._history.append(key)
        window = self._history[-(self._trusted_previous + 1) :]
        self._snapshot = KeySet(version=self._snapshot.version + 1, keys=tuple(reversed(window)))
        return self._snapshot

    def rotate(self, key: SigningKey) -> KeySet:
        """Append key, make it current, and return the new snapshot."""
        with self._lock:
            return self._append(key)

    def snapshot(self) -> KeySet:
        # Attribute read is atomic; the KeySet itself is immutable.
        return self._snapshot

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyRegistry:
        keys = [SigningKey(kid=kid, secret=secret) for kid, secret in settings.parsed_signing_keys()]
        return cls(keys, trusted_previous=settings.trusted_previous_keys)


def generate_signing_key(kid: str) -> SigningKey:
    """Create a new random HS256 key (256 bits of entropy)."""
    return SigningKey(kid=kid, secret=secrets.token_urlsafe(32))


@lru_cache
def get_key_registry() -> KeyRegistry:
    """Return the process-wide registry built from get_settings()."""
    return KeyRegistry.from_settings(get_settings())
