"""SQLite implementation of the access store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..clock import as_utc, utcnow
from ..errors import StoreError
from ..models import (
    AccessPolicy,
    GeographicScope,
    PermissionAction,
    PermissionCheckRecord,
    ResourceType,
    UserPermissionOverride,
    UserRole,
)
from .repository import AccessStore, sort_policies

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so timestamps compare correctly as strings."""
    if value is None:
        return None
    return as_utc(value).strftime(_TS_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteAccessStore(AccessStore):
    """Persist overrides, scopes, policies and audit records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS permission_overrides (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT,
                action TEXT NOT NULL,
                effect TEXT NOT NULL,
                expires_at TEXT,
                created_at TEXT NOT NULL,
                granted_by TEXT
            );
            CREATE INDEX IF NOT EXISTS ix_overrides_lookup
                ON permission_overrides (user_id, resource_type, action);

            CREATE TABLE IF NOT EXISTS geographic_scopes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                scope_level TEXT NOT NULL,
                county_id TEXT,
                constituency_id TEXT,
                ward_id TEXT
            );
            CREATE INDEX IF NOT EXISTS ix_scopes_user ON geographic_scopes (user_id);

            CREATE TABLE IF NOT EXISTS access_policies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                description TEXT,
                effect TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                roles TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                actions TEXT NOT NULL,
                conditions TEXT,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS permission_checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT,
                action TEXT NOT NULL,
                granted INTEGER NOT NULL,
                reason TEXT,
                ip_address TEXT,
                device_id TEXT,
                latitude REAL,
                longitude REAL,
                checked_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_checks_checked_at
                ON permission_checks (checked_at);
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite write failed: {exc}") from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite read failed: {exc}") from exc

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite read failed: {exc}") from exc

    async def _run(self, fn, *args: Any) -> Any:
        # one shared connection; serialize access across threads
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _override_from_row(row: sqlite3.Row) -> UserPermissionOverride:
        return UserPermissionOverride(
            id=row["id"],
            user_id=row["user_id"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            action=row["action"],
            effect=row["effect"],
            expires_at=_parse_ts(row["expires_at"]),
            created_at=_parse_ts(row["created_at"]),
            granted_by=row["granted_by"],
        )

    @staticmethod
    def _policy_from_row(row: sqlite3.Row) -> AccessPolicy:
        return AccessPolicy(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            effect=row["effect"],
            priority=row["priority"],
            roles=json.loads(row["roles"]),
            resource_type=row["resource_type"],
            actions=json.loads(row["actions"]),
            conditions=json.loads(row["conditions"]) if row["conditions"] else None,
            is_active=bool(row["is_active"]),
        )

    # ------------------------------------------------------------------
    # Engine reads
    async def find_override(
        self,
        user_id: str,
        resource_type: ResourceType,
        resource_id: Optional[str],
        action: PermissionAction,
        as_of: Optional[datetime] = None,
    ) -> UserPermissionOverride | None:
        row = await self._run(
            self._fetchone,
            """
            SELECT * FROM permission_overrides
            WHERE user_id = ? AND resource_type = ? AND action = ?
              AND (resource_id = ? OR resource_id IS NULL)
              AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY (resource_id IS NULL) ASC, created_at DESC, id DESC
            LIMIT 1
            """,
            user_id,
            resource_type.value,
            action.value,
            resource_id,
            _ts(as_of or utcnow()),
        )
        return self._override_from_row(row) if row else None

    async def list_scopes(self, user_id: str) -> list[GeographicScope]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM geographic_scopes WHERE user_id = ? ORDER BY id",
            user_id,
        )
        return [
            GeographicScope(
                id=r["id"],
                user_id=r["user_id"],
                scope_level=r["scope_level"],
                county_id=r["county_id"],
                constituency_id=r["constituency_id"],
                ward_id=r["ward_id"],
            )
            for r in rows
        ]

    async def list_active_policies(
        self, resource_type: ResourceType, action: PermissionAction, role: UserRole
    ) -> list[AccessPolicy]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM access_policies WHERE is_active = 1 AND resource_type = ?",
            resource_type.value,
        )
        # roles/actions are JSON arrays; membership is filtered after decoding
        policies = [self._policy_from_row(r) for r in rows]
        return sort_policies(
            p for p in policies if p.applies_to(resource_type, action, role)
        )

    async def record_check(self, record: PermissionCheckRecord) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO permission_checks (
                user_id, resource_type, resource_id, action, granted, reason,
                ip_address, device_id, latitude, longitude, checked_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            record.user_id,
            record.resource_type.value,
            record.resource_id,
            record.action.value,
            int(record.granted),
            record.reason,
            record.ip_address,
            record.device_id,
            record.latitude,
            record.longitude,
            _ts(record.checked_at),
        )

    async def list_checks(
        self, since: datetime, user_id: Optional[str] = None
    ) -> list[PermissionCheckRecord]:
        query = "SELECT * FROM permission_checks WHERE checked_at >= ?"
        params: list[Any] = [_ts(since)]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        rows = await self._run(self._fetchall, query + " ORDER BY id", *params)
        return [
            PermissionCheckRecord(
                id=r["id"],
                user_id=r["user_id"],
                resource_type=r["resource_type"],
                resource_id=r["resource_id"],
                action=r["action"],
                granted=bool(r["granted"]),
                reason=r["reason"],
                ip_address=r["ip_address"],
                device_id=r["device_id"],
                latitude=r["latitude"],
                longitude=r["longitude"],
                checked_at=_parse_ts(r["checked_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Administrative writes
    async def save_override(
        self, override: UserPermissionOverride
    ) -> UserPermissionOverride:
        cur = await self._run(
            self._execute,
            """
            INSERT INTO permission_overrides (
                user_id, resource_type, resource_id, action, effect,
                expires_at, created_at, granted_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            override.user_id,
            override.resource_type.value,
            override.resource_id,
            override.action.value,
            override.effect.value,
            _ts(override.expires_at),
            _ts(override.created_at),
            override.granted_by,
        )
        return override.model_copy(update={"id": cur.lastrowid})

    async def delete_override(self, override_id: int) -> bool:
        cur = await self._run(
            self._execute, "DELETE FROM permission_overrides WHERE id = ?", override_id
        )
        return cur.rowcount > 0

    async def save_scope(self, scope: GeographicScope) -> GeographicScope:
        cur = await self._run(
            self._execute,
            """
            INSERT INTO geographic_scopes (
                user_id, scope_level, county_id, constituency_id, ward_id
            ) VALUES (?, ?, ?, ?, ?)
            """,
            scope.user_id,
            scope.scope_level.value,
            scope.county_id,
            scope.constituency_id,
            scope.ward_id,
        )
        return scope.model_copy(update={"id": cur.lastrowid})

    async def delete_scope(self, scope_id: int) -> bool:
        cur = await self._run(
            self._execute, "DELETE FROM geographic_scopes WHERE id = ?", scope_id
        )
        return cur.rowcount > 0

    async def save_policy(self, policy: AccessPolicy) -> AccessPolicy:
        await self._run(
            self._execute,
            """
            INSERT INTO access_policies (
                name, description, effect, priority, roles, resource_type,
                actions, conditions, is_active
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                description = excluded.description,
                effect = excluded.effect,
                priority = excluded.priority,
                roles = excluded.roles,
                resource_type = excluded.resource_type,
                actions = excluded.actions,
                conditions = excluded.conditions,
                is_active = excluded.is_active
            """,
            policy.name,
            policy.description,
            policy.effect.value,
            policy.priority,
            json.dumps([r.value for r in policy.roles]),
            policy.resource_type.value,
            json.dumps([a.value for a in policy.actions]),
            json.dumps(policy.conditions.model_dump(mode="json", by_alias=True, exclude_none=True)),
            int(policy.is_active),
        )
        row = await self._run(
            self._fetchone, "SELECT id FROM access_policies WHERE name = ?", policy.name
        )
        return policy.model_copy(update={"id": row["id"]})
