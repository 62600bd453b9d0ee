"""
auth/rbac.py -- Role-based access evaluation.

Roles and permissions are plain identifiers. Resolution is a pure function
over two immutable inputs -- a RoleCatalog snapshot and a principal's role
set -- so it can be cached and recomputed freely:

    effective = union(catalog.roles[r] for r in principal_roles if r in catalog)

Matching rules (documented, not inferred):
  - An exact grant matches only the identical permission string.
  - A grant ending in ":*" is a prefix-wildcard grant: "doc:*" matches
    "doc:read" and "doc:page:edit", but not "docs:read" or "doc".
  - A bare "*" grant matches every permission.
  - Exact grants win. Otherwise the longest matching wildcard prefix is the
    grant reported by explain(). There are no negative grants, so
    precedence only affects what is reported, never the verdict.
  - Anything not granted is denied: unknown roles, unknown permissions,
    empty strings, and storage failures while loading the catalog.

Caching: the evaluator keeps the last RoleCatalog it loaded and re-reads the
catalog version on every check (one indexed read), or at most every
`refresh_interval` seconds when the host opts into bounded staleness. Resolved
sets are cached per (frozenset(roles), catalog.version) in a bounded LRU, so a role
change becomes visible as soon as the version moves. The cache is never a
source of truth -- dropping it only costs a recomputation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol

from auth.errors import PermissionDenied, StorageUnavailable

logger = logging.getLogger("gatehouse.auth")

WILDCARD_SUFFIX = ":*"


@dataclass(frozen=True)
class RoleCatalog:
    """Immutable snapshot: role id -> granted permission ids."""

    version: int
    roles: Mapping[str, frozenset[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "roles", MappingProxyType({k: frozenset(v) for k, v in dict(self.roles).items()})
        )


class RoleSource(Protocol):
    def catalog_version(self) -> int: ...

    def load_catalog(self) -> RoleCatalog: ...


def resolve_permissions(catalog: RoleCatalog, principal_roles: Iterable[str]) -> frozenset[str]:
    """Union of the permission sets of every known role. Unknown roles grant nothing."""
    granted: set[str] = set()
    for role_id in principal_roles:
        granted |= catalog.roles.get(role_id, frozenset())
    return frozenset(granted)


def match_grant(granted: frozenset[str], permission: str) -> str | None:
    """Return the grant that allows permission, or None."""
    if not permission:
        return None
    if permission in granted:
        return permission
    best: str | None = None
    for grant in granted:
        if grant == "*":
            prefix = ""
        elif grant.endswith(WILDCARD_SUFFIX):
            prefix = grant[:-1]  # keep the ":" so "doc:*" cannot match "docs:x"
        else:
            continue
        if permission.startswith(prefix) and len(permission) > len(prefix):
            if best is None or len(grant) > len(best):
                best = grant
    return best


class RbacEvaluator:
    """Evaluates access checks against a RoleSource.

    Usage:
        rbac = RbacEvaluator(role_store)
        rbac.authorize({"editor"}, "doc:write")   # True / False
        rbac.require({"editor"}, "doc:delete")    # raises PermissionDenied
    """

    def __init__(
        self,
        source: RoleSource,
        cache_size: int = 256,
        refresh_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.cache_size = cache_size
        self.refresh_interval = refresh_interval
        self.clock = clock
        self._lock = threading.Lock()
        self._catalog: RoleCatalog | None = None
        self._checked_at = float("-inf")
        self._resolved: OrderedDict[tuple[frozenset[str], int], frozenset[str]] = OrderedDict()

    def catalog(self) -> RoleCatalog:
        """Return the current catalog snapshot, reloading when the version moved.

        Raises StorageUnavailable if the source cannot be reached.
        """
        now = self.clock()
        cached = self._catalog
        if cached is not None and now - self._checked_at < self.refresh_interval:
            return cached
        version = self.source.catalog_version()
        if cached is None or version != cached.version:
            cached = self.source.load_catalog()
        with self._lock:
            self._catalog = cached
            self._checked_at = now
        return cached

    def effective_permissions(self, principal_roles: Iterable[str]) -> frozenset[str]:
        catalog = self.catalog()
        key = (frozenset(principal_roles), catalog.version)
        with self._lock:
            hit = self._resolved.get(key)
            if hit is not None:
                self._resolved.move_to_end(key)
                return hit
        resolved = resolve_permissions(catalog, key[0])
        with self._lock:
            self._resolved[key] = resolved
            while len(self._resolved) > self.cache_size:
                self._resolved.popitem(last=False)
        return resolved

    def explain(self, principal_roles: Iterable[str], required_permission: str) -> str | None:
        """Return the grant that allows the check, or None when denied."""
        return match_grant(self.effective_permissions(principal_roles), required_permission)

    def authorize(self, principal_roles: Iterable[str], required_permission: str) -> bool:
        """True if any assigned role grants required_permission. Fails closed."""
        try:
            return self.explain(principal_roles, required_permission) is not None
        except StorageUnavailable:
            logger.error("Role catalog unavailable; denying %r", required_permission)
            return False

    def require(self, principal_roles: Iterable[str], required_permission: str) -> None:
        """Raise PermissionDenied unless allowed.

        StorageUnavailable propagates so the caller can tell an outage from a
        genuine denial.
        """
        if self.explain(principal_roles, required_permission) is None:
            raise PermissionDenied(required_permission)
