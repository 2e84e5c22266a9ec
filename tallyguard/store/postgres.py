"""PostgreSQL implementation of the access store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

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
from .repository import AccessStore


def _json(value: Any) -> Any:
    # asyncpg returns JSONB as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresAccessStore(AccessStore):
    """Persist overrides, scopes, policies and audit records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StoreError(f"postgres connection failed: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS permission_overrides (
                id SERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT,
                action TEXT NOT NULL,
                effect TEXT NOT NULL,
                expires_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                granted_by TEXT
            );
            CREATE TABLE IF NOT EXISTS geographic_scopes (
                id SERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                scope_level TEXT NOT NULL,
                county_id TEXT,
                constituency_id TEXT,
                ward_id TEXT
            );
            CREATE TABLE IF NOT EXISTS access_policies (
                id SERIAL PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT,
                effect TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 0,
                roles TEXT[] NOT NULL,
                resource_type TEXT NOT NULL,
                actions TEXT[] NOT NULL,
                conditions JSONB,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            );
            CREATE TABLE IF NOT EXISTS permission_checks (
                id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT,
                action TEXT NOT NULL,
                granted BOOLEAN NOT NULL,
                reason TEXT,
                ip_address TEXT,
                device_id TEXT,
                latitude DOUBLE PRECISION,
                longitude DOUBLE PRECISION,
                checked_at TIMESTAMPTZ NOT NULL
            );
            """
        )

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"postgres read failed: {exc}") from exc
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"postgres read failed: {exc}") from exc
        finally:
            await conn.close()

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        except asyncpg.PostgresError as exc:
            raise StoreError(f"postgres write failed: {exc}") from exc
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def find_override(
        self,
        user_id: str,
        resource_type: ResourceType,
        resource_id: Optional[str],
        action: PermissionAction,
        as_of: Optional[datetime] = None,
    ) -> UserPermissionOverride | None:
        row = await self._fetchrow(
            """
            SELECT * FROM permission_overrides
            WHERE user_id = $1 AND resource_type = $2 AND action = $3
              AND (resource_id = $4 OR resource_id IS NULL)
              AND (expires_at IS NULL OR expires_at > $5)
            ORDER BY (resource_id IS NULL) ASC, created_at DESC, id DESC
            LIMIT 1
            """,
            user_id,
            resource_type.value,
            action.value,
            resource_id,
            as_utc(as_of or utcnow()),
        )
        return UserPermissionOverride(**dict(row)) if row else None

    async def list_scopes(self, user_id: str) -> list[GeographicScope]:
        rows = await self._fetch(
            "SELECT * FROM geographic_scopes WHERE user_id = $1 ORDER BY id", user_id
        )
        return [GeographicScope(**dict(r)) for r in rows]

    async def list_active_policies(
        self, resource_type: ResourceType, action: PermissionAction, role: UserRole
    ) -> list[AccessPolicy]:
        rows = await self._fetch(
            """
            SELECT * FROM access_policies
            WHERE is_active AND resource_type = $1
              AND $2 = ANY(actions) AND $3 = ANY(roles)
            ORDER BY priority DESC, id
            """,
            resource_type.value,
            action.value,
            role.value,
        )
        return [
            AccessPolicy(**{**dict(r), "conditions": _json(r["conditions"])})
            for r in rows
        ]

    async def record_check(self, record: PermissionCheckRecord) -> None:
        await self._execute(
            """
            INSERT INTO permission_checks (
                user_id, resource_type, resource_id, action, granted, reason,
                ip_address, device_id, latitude, longitude, checked_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            record.user_id,
            record.resource_type.value,
            record.resource_id,
            record.action.value,
            record.granted,
            record.reason,
            record.ip_address,
            record.device_id,
            record.latitude,
            record.longitude,
            record.checked_at,
        )

    async def list_checks(
        self, since: datetime, user_id: Optional[str] = None
    ) -> list[PermissionCheckRecord]:
        if user_id is None:
            rows = await self._fetch(
                "SELECT * FROM permission_checks WHERE checked_at >= $1 ORDER BY id",
                as_utc(since),
            )
        else:
            rows = await self._fetch(
                "SELECT * FROM permission_checks WHERE checked_at >= $1 AND user_id = $2 ORDER BY id",
                as_utc(since),
                user_id,
            )
        return [PermissionCheckRecord(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    async def save_override(
        self, override: UserPermissionOverride
    ) -> UserPermissionOverride:
        row = await self._fetchrow(
            """
            INSERT INTO permission_overrides (
                user_id, resource_type, resource_id, action, effect,
                expires_at, created_at, granted_by
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING id
            """,
            override.user_id,
            override.resource_type.value,
            override.resource_id,
            override.action.value,
            override.effect.value,
            override.expires_at,
            override.created_at,
            override.granted_by,
        )
        return override.model_copy(update={"id": row["id"]})

    async def delete_override(self, override_id: int) -> bool:
        status = await self._execute(
            "DELETE FROM permission_overrides WHERE id = $1", override_id
        )
        return status != "DELETE 0"

    async def save_scope(self, scope: GeographicScope) -> GeographicScope:
        row = await self._fetchrow(
            """
            INSERT INTO geographic_scopes (
                user_id, scope_level, county_id, constituency_id, ward_id
            ) VALUES ($1, $2, $3, $4, $5)
            RETURNING id
            """,
            scope.user_id,
            scope.scope_level.value,
            scope.county_id,
            scope.constituency_id,
            scope.ward_id,
        )
        return scope.model_copy(update={"id": row["id"]})

    async def delete_scope(self, scope_id: int) -> bool:
        status = await self._execute(
            "DELETE FROM geographic_scopes WHERE id = $1", scope_id
        )
        return status != "DELETE 0"

    async def save_policy(self, policy: AccessPolicy) -> AccessPolicy:
        row = await self._fetchrow(
            """
            INSERT INTO access_policies (
                name, description, effect, priority, roles, resource_type,
                actions, conditions, is_active
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (name) DO UPDATE SET
                description = EXCLUDED.description,
                effect = EXCLUDED.effect,
                priority = EXCLUDED.priority,
                roles = EXCLUDED.roles,
                resource_type = EXCLUDED.resource_type,
                actions = EXCLUDED.actions,
                conditions = EXCLUDED.conditions,
                is_active = EXCLUDED.is_active
            RETURNING id
            """,
            policy.name,
            policy.description,
            policy.effect.value,
            policy.priority,
            [r.value for r in policy.roles],
            policy.resource_type.value,
            [a.value for a in policy.actions],
            json.dumps(
                policy.conditions.model_dump(mode="json", by_alias=True, exclude_none=True)
            ),
            policy.is_active,
        )
        return policy.model_copy(update={"id": row["id"]})
