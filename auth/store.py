"""
auth/store.py -- SQLAlchemy Core persistence for principals, roles and permissions.

Pattern: Repository + Data Mapper. PrincipalStore and RoleStore are the
repositories; _row_to_principal / _row_to_role are the mappers. The session
manager never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Roles are referenced by principals, never owned: deleting a role leaves the
id in principals.roles, where it resolves to no permissions (fail closed).

Every write to roles or permissions bumps role_catalog.version inside the same
transaction, so an RBAC cache keyed by version can never pair a new version
with an old permission set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable

from sqlalchemy import select, text
from sqlalchemy.engine import Connection, Engine

from auth.models import Permission, Principal, PrincipalStatus, Role
from auth.rbac import RoleCatalog
from auth.schema import permissions, principals, role_catalog, roles, storage_errors


def _dump_ids(values: Iterable[str]) -> str:
    return json.dumps(sorted(set(values)))


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal records.

    Usage:
        store = PrincipalStore(engine)
        store.create_principal(Principal(identifier="alice", credential_hash=hasher.hash("pw")))
        alice = store.get("alice")
    """

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self.clock = clock

    def create_principal(self, principal: Principal) -> None:
        """Insert a principal.

        Raises sqlalchemy.exc.IntegrityError if the identifier already exists.
        """
        with storage_errors("create_principal"), self.engine.connect() as conn:
            conn.execute(
                principals.insert().values(
                    identifier=principal.identifier,
                    credential_hash=principal.credential_hash,
                    roles=_dump_ids(principal.roles),
                    status=principal.status.value,
                    failed_attempts=principal.failed_attempts,
                    mfa_enabled=principal.mfa_enabled,
                    created_at=principal.created_at or self.clock(),
                )
            )
            conn.commit()

    def get(self, identifier: str) -> Principal | None:
        with storage_errors("get_principal"), self.engine.connect() as conn:
            row = conn.execute(principals.select().where(principals.c.identifier == identifier)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def list_principals(self) -> list[Principal]:
        with storage_errors("list_principals"), self.engine.connect() as conn:
            rows = conn.execute(principals.select().order_by(principals.c.identifier)).fetchall()
        return [_row_to_principal(r) for r in rows]

    def update_credential(self, identifier: str, credential_hash: str) -> bool:
        return self._update(identifier, "update_credential", credential_hash=credential_hash)

    def assign_roles(self, identifier: str, role_ids: Iterable[str]) -> bool:
        return self._update(identifier, "assign_roles", roles=_dump_ids(role_ids))

    def set_status(self, identifier: str, status: PrincipalStatus) -> bool:
        return self._update(identifier, "set_status", status=status.value)

    def set_mfa(self, identifier: str, enabled: bool) -> bool:
        return self._update(identifier, "set_mfa", mfa_enabled=enabled)

    def record_login(self, identifier: str) -> None:
        """Stamp last_login, clear the failure mirror, and lift a guard lock mirror."""
        with storage_errors("record_login"), self.engine.connect() as conn:
            conn.execute(
                principals.update()
                .where(principals.c.identifier == identifier)
                .values(last_login=self.clock(), failed_attempts=0)
            )
            conn.execute(
                principals.update()
                .where(
                    (principals.c.identifier == identifier)
                    & (principals.c.status == PrincipalStatus.locked.value)
                )
                .values(status=PrincipalStatus.active.value)
            )
            conn.commit()

    def increment_failed_attempts(self, identifier: str) -> None:
        # Single UPDATE: atomic under concurrent workers.
        with storage_errors("increment_failed_attempts"), self.engine.connect() as conn:
            conn.execute(
                principals.update()
                .where(principals.c.identifier == identifier)
                .values(failed_attempts=principals.c.failed_attempts + 1)
            )
            conn.commit()

    def delete_principal(self, identifier: str) -> bool:
        with storage_errors("delete_principal"), self.engine.connect() as conn:
            result = conn.execute(principals.delete().where(principals.c.identifier == identifier))
            conn.commit()
        return result.rowcount > 0

    def _update(self, identifier: str, operation: str, **fields) -> bool:
        with storage_errors(operation), self.engine.connect() as conn:
            result = conn.execute(principals.update().where(principals.c.identifier == identifier).values(**fields))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class RoleStore:
    """Repository for the permission catalog and role definitions.

    Implements the RoleSource protocol consumed by RbacEvaluator
    (catalog_version / load_catalog).
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._ensure_catalog_row()

    def _ensure_catalog_row(self) -> None:
        """Seed the single-row role_catalog record. Idempotent."""
        with storage_errors("init_role_catalog"), self.engine.connect() as conn:
            exists = conn.execute(select(role_catalog.c.id).where(role_catalog.c.id == 1)).fetchone()
            if exists is None:
                conn.execute(role_catalog.insert().values(id=1, version=1))
                conn.commit()

    @staticmethod
    def _bump(conn: Connection) -> None:
        conn.execute(role_catalog.update().where(role_catalog.c.id == 1).values(version=role_catalog.c.version + 1))

    def define_permission(self, identifier: str, description: str = "") -> None:
        """Add or re-describe a permission catalog entry."""
        if not identifier or identifier != identifier.strip():
            raise ValueError("Permission identifiers must be non-empty and unpadded")
        if "*" in identifier and not (identifier == "*" or identifier.endswith(":*")):
            raise ValueError("Wildcard grants must take the form 'prefix:*'")
        with storage_errors("define_permission"), self.engine.begin() as conn:
            exists = conn.execute(
                select(permissions.c.identifier).where(permissions.c.identifier == identifier)
            ).fetchone()
            if exists is None:
                conn.execute(permissions.insert().values(identifier=identifier, description=description))
            else:
                conn.execute(
                    permissions.update()
                    .where(permissions.c.identifier == identifier)
                    .values(description=description)
                )
            self._bump(conn)

    def list_permissions(self) -> list[Permission]:
        with storage_errors("list_permissions"), self.engine.connect() as conn:
            rows = conn.execute(permissions.select().order_by(permissions.c.identifier)).fetchall()
        return [Permission(identifier=r.identifier, description=r.description) for r in rows]

    def define_role(self, identifier: str, permission_ids: Iterable[str]) -> Role:
        """Create or replace a role. Every permission must be catalogued.

        Permission order is preserved (first occurrence wins on duplicates).
        Raises ValueError naming any unknown permission ids.
        """
        ordered: list[str] = []
        for pid in permission_ids:
            if pid not in ordered:
                ordered.append(pid)
        with storage_errors("define_role"), self.engine.begin() as conn:
            known = {r[0] for r in conn.execute(select(permissions.c.identifier)).fetchall()}
            unknown = [p for p in ordered if p not in known]
            if unknown:
                raise ValueError(f"Unknown permissions: {unknown!r}")
            payload = json.dumps(ordered)
            exists = conn.execute(select(roles.c.identifier).where(roles.c.identifier == identifier)).fetchone()
            if exists is None:
                conn.execute(roles.insert().values(identifier=identifier, permissions=payload))
            else:
                conn.execute(roles.update().where(roles.c.identifier == identifier).values(permissions=payload))
            self._bump(conn)
        return Role(identifier=identifier, permissions=tuple(ordered))

    def get_role(self, identifier: str) -> Role | None:
        with storage_errors("get_role"), self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.identifier == identifier)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with storage_errors("list_roles"), self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.identifier)).fetchall()
        return [_row_to_role(r) for r in rows]

    def delete_role(self, identifier: str) -> bool:
        with storage_errors("delete_role"), self.engine.begin() as conn:
            result = conn.execute(roles.delete().where(roles.c.identifier == identifier))
            if result.rowcount > 0:
                self._bump(conn)
        return result.rowcount > 0

    # RoleSource protocol

    def catalog_version(self) -> int:
        with storage_errors("catalog_version"), self.engine.connect() as conn:
            version = conn.execute(text("SELECT version FROM role_catalog WHERE id = 1")).scalar()
        return int(version or 0)

    def load_catalog(self) -> RoleCatalog:
        """Read version and every role in one transaction (consistent snapshot)."""
        with storage_errors("load_catalog"), self.engine.begin() as conn:
            version = conn.execute(text("SELECT version FROM role_catalog WHERE id = 1")).scalar()
            rows = conn.execute(roles.select()).fetchall()
        return RoleCatalog(
            version=int(version or 0),
            roles={r.identifier: frozenset(json.loads(r.permissions)) for r in rows},
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        identifier=row.identifier,
        credential_hash=row.credential_hash,
        roles=frozenset(json.loads(row.roles or "[]")),
        status=PrincipalStatus(row.status),
        failed_attempts=row.failed_attempts,
        last_login=row.last_login,
        mfa_enabled=bool(row.mfa_enabled),
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(identifier=row.identifier, permissions=tuple(json.loads(row.permissions)))
