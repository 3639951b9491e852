"""SQLite-backed storage collaborator.

Blocking sqlite calls run in a worker thread so they never stall the
event loop.  Every call opens its own connection.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from uem_gateway.models.context import ScopeKey
from uem_gateway.storage.base import Domain, PersistenceError, Policy, Tenant


@dataclass
class SQLiteStorage:
    path: Path

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path))
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_schema(self) -> None:
        with self._connect() as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS domains (
                    domain_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    features TEXT NOT NULL DEFAULT '[]'
                );
                CREATE TABLE IF NOT EXISTS tenants (
                    tenant_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    domain_id TEXT,
                    features TEXT NOT NULL DEFAULT '[]'
                );
                CREATE TABLE IF NOT EXISTS policies (
                    policy_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    is_active INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS ai_artifacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    artifact_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    domain_id TEXT,
                    tenant_id TEXT,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS ai_usage_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    domain_id TEXT,
                    tenant_id TEXT,
                    cost_usd REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_ai_usage_scope
                    ON ai_usage_records (user_id, domain_id, tenant_id, created_at);
                """
            )

    async def _run(self, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            raise PersistenceError(f"sqlite storage failed: {exc}") from exc

    # -- seeding -------------------------------------------------------------

    def add_domain(self, domain: Domain) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO domains (domain_id, display_name, features) "
                "VALUES (?, ?, ?)",
                (domain.domain_id, domain.display_name, json.dumps(list(domain.features))),
            )

    def add_tenant(self, tenant: Tenant) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO tenants (tenant_id, display_name, domain_id, features) "
                "VALUES (?, ?, ?, ?)",
                (
                    tenant.tenant_id,
                    tenant.display_name,
                    tenant.domain_id,
                    json.dumps(list(tenant.features)),
                ),
            )

    def add_policy(self, policy: Policy) -> None:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO policies "
                "(policy_id, name, category, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    policy.policy_id,
                    policy.name,
                    policy.category,
                    1 if policy.is_active else 0,
                    policy.created_at,
                ),
            )

    # -- collaborator contract ----------------------------------------------

    async def get_domain_by_id(self, domain_id: str) -> Domain | None:
        row = await self._run(
            self._fetch_one, "SELECT * FROM domains WHERE domain_id = ?", (domain_id,)
        )
        if row is None:
            return None
        return Domain(
            domain_id=row["domain_id"],
            display_name=row["display_name"],
            features=tuple(json.loads(row["features"])),
        )

    async def get_tenant_by_id(self, tenant_id: str) -> Tenant | None:
        row = await self._run(
            self._fetch_one, "SELECT * FROM tenants WHERE tenant_id = ?", (tenant_id,)
        )
        if row is None:
            return None
        return Tenant(
            tenant_id=row["tenant_id"],
            display_name=row["display_name"],
            domain_id=row["domain_id"],
            features=tuple(json.loads(row["features"])),
        )

    async def get_active_policies(self, category: str) -> list[Policy]:
        rows = await self._run(
            self._fetch_all,
            "SELECT * FROM policies WHERE category = ? AND is_active = 1 ORDER BY created_at DESC",
            (category,),
        )
        return [
            Policy(
                policy_id=row["policy_id"],
                name=row["name"],
                category=row["category"],
                is_active=bool(row["is_active"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def persist_generated_artifact(self, record: dict[str, Any]) -> None:
        await self._run(
            self._execute,
            "INSERT INTO ai_artifacts "
            "(artifact_id, kind, request_id, user_id, domain_id, tenant_id, "
            "created_at, payload_json) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                str(record.get("artifact_id", "")),
                str(record.get("kind", "")),
                str(record.get("request_id", "")),
                str(record.get("user_id", "")),
                record.get("domain_id"),
                record.get("tenant_id"),
                str(record.get("created_at") or datetime.now(UTC).isoformat()),
                json.dumps(record, ensure_ascii=True, default=str),
            ),
        )

    async def persist_usage_record(self, record: dict[str, Any]) -> None:
        await self._run(
            self._execute,
            "INSERT INTO ai_usage_records "
            "(request_id, user_id, domain_id, tenant_id, cost_usd, created_at, payload_json) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                str(record.get("request_id", "")),
                str(record.get("user_id", "")),
                record.get("domain_id"),
                record.get("tenant_id"),
                float(record.get("cost_usd", 0.0)),
                str(record.get("created_at") or datetime.now(UTC).isoformat()),
                json.dumps(record, ensure_ascii=True, default=str),
            ),
        )

    async def sum_cost_for_scope_today(self, scope: ScopeKey) -> float:
        today = datetime.now(UTC).date().isoformat()
        row = await self._run(
            self._fetch_one,
            "SELECT COALESCE(SUM(cost_usd), 0) AS total FROM ai_usage_records "
            "WHERE user_id = ? AND domain_id IS ? AND tenant_id IS ? "
            "AND substr(created_at, 1, 10) = ?",
            (scope.user_id, scope.domain_id, scope.tenant_id, today),
        )
        return round(float(row["total"]) if row is not None else 0.0, 8)

    async def list_usage_records(self, scope: ScopeKey | None = None) -> list[dict[str, Any]]:
        if scope is None:
            rows = await self._run(
                self._fetch_all, "SELECT payload_json FROM ai_usage_records ORDER BY id ASC", ()
            )
        else:
            rows = await self._run(
                self._fetch_all,
                "SELECT payload_json FROM ai_usage_records "
                "WHERE user_id = ? AND domain_id IS ? AND tenant_id IS ? ORDER BY id ASC",
                (scope.user_id, scope.domain_id, scope.tenant_id),
            )
        return [json.loads(row["payload_json"]) for row in rows]

    async def list_artifacts(self) -> list[dict[str, Any]]:
        rows = await self._run(
            self._fetch_all, "SELECT payload_json FROM ai_artifacts ORDER BY id ASC", ()
        )
        return [json.loads(row["payload_json"]) for row in rows]

    def readiness(self) -> str:
        try:
            with self._connect() as connection:
                connection.execute("SELECT 1")
        except sqlite3.Error:
            return "unavailable"
        return "ok"

    # -- blocking helpers ----------------------------------------------------

    def _fetch_one(self, sql: str, params: tuple[object, ...]) -> sqlite3.Row | None:
        with self._connect() as connection:
            row: sqlite3.Row | None = connection.execute(sql, params).fetchone()
            return row

    def _fetch_all(self, sql: str, params: tuple[object, ...]) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return list(connection.execute(sql, params).fetchall())

    def _execute(self, sql: str, params: tuple[object, ...]) -> None:
        with self._connect() as connection:
            connection.execute(sql, params)
