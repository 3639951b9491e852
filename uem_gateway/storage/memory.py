"""In-process storage collaborator used for development and tests."""

import threading
from copy import deepcopy
from datetime import UTC, datetime
from typing import Any

from uem_gateway.models.context import ScopeKey
from uem_gateway.storage.base import Domain, Policy, Tenant, scope_fields, utc_day


class InMemoryStorage:
    def __init__(
        self,
        domains: list[Domain] | None = None,
        tenants: list[Tenant] | None = None,
        policies: list[Policy] | None = None,
    ) -> None:
        self._domains = {item.domain_id: item for item in domains or []}
        self._tenants = {item.tenant_id: item for item in tenants or []}
        self._policies = list(policies or [])
        self._artifacts: list[dict[str, Any]] = []
        self._usage: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def add_domain(self, domain: Domain) -> None:
        with self._lock:
            self._domains[domain.domain_id] = domain

    def add_tenant(self, tenant: Tenant) -> None:
        with self._lock:
            self._tenants[tenant.tenant_id] = tenant

    def add_policy(self, policy: Policy) -> None:
        with self._lock:
            self._policies.append(policy)

    @property
    def artifacts(self) -> list[dict[str, Any]]:
        with self._lock:
            return deepcopy(self._artifacts)

    async def get_domain_by_id(self, domain_id: str) -> Domain | None:
        with self._lock:
            return self._domains.get(domain_id)

    async def get_tenant_by_id(self, tenant_id: str) -> Tenant | None:
        with self._lock:
            return self._tenants.get(tenant_id)

    async def get_active_policies(self, category: str) -> list[Policy]:
        with self._lock:
            matching = [p for p in self._policies if p.category == category and p.is_active]
        return sorted(matching, key=lambda p: p.created_at, reverse=True)

    async def persist_generated_artifact(self, record: dict[str, Any]) -> None:
        with self._lock:
            self._artifacts.append(deepcopy(record))

    async def persist_usage_record(self, record: dict[str, Any]) -> None:
        with self._lock:
            self._usage.append(deepcopy(record))

    async def sum_cost_for_scope_today(self, scope: ScopeKey) -> float:
        today = datetime.now(UTC).date().isoformat()
        wanted = scope_fields(scope)
        with self._lock:
            total = sum(
                float(row.get("cost_usd", 0.0))
                for row in self._usage
                if all(row.get(name) == value for name, value in wanted.items())
                and utc_day(row.get("created_at")) == today
            )
        return round(total, 8)

    async def list_usage_records(self, scope: ScopeKey | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = deepcopy(self._usage)
        if scope is None:
            return rows
        wanted = scope_fields(scope)
        return [
            row for row in rows if all(row.get(name) == value for name, value in wanted.items())
        ]

    def readiness(self) -> str:
        return "ok"
