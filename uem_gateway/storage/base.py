from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from uem_gateway.models.context import ScopeKey


class PersistenceError(Exception):
    """Raised when the storage collaborator cannot read or write a record."""


@dataclass(frozen=True)
class Domain:
    domain_id: str
    display_name: str
    features: tuple[str, ...] = ()


@dataclass(frozen=True)
class Tenant:
    tenant_id: str
    display_name: str
    domain_id: str | None = None
    features: tuple[str, ...] = ()


@dataclass(frozen=True)
class Policy:
    policy_id: str
    name: str
    category: str
    is_active: bool = True
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class Storage(Protocol):
    async def get_domain_by_id(self, domain_id: str) -> Domain | None:
        """Return the domain or None when it does not exist."""

    async def get_tenant_by_id(self, tenant_id: str) -> Tenant | None:
        """Return the tenant or None when it does not exist."""

    async def get_active_policies(self, category: str) -> list[Policy]:
        """Return active policies of a category, most recent first."""

    async def persist_generated_artifact(self, record: dict[str, Any]) -> None:
        """Store a generated script or analysis report."""

    async def persist_usage_record(self, record: dict[str, Any]) -> None:
        """Append one usage record."""

    async def sum_cost_for_scope_today(self, scope: ScopeKey) -> float:
        """Sum ``cost_usd`` of this scope's usage records for the current UTC day."""

    async def list_usage_records(self, scope: ScopeKey | None = None) -> list[dict[str, Any]]:
        """Return usage records in write order, optionally for one scope."""

    def readiness(self) -> str:
        """Return ``ok`` when the backend is usable."""


def scope_fields(scope: ScopeKey) -> dict[str, str | None]:
    return {
        "user_id": scope.user_id,
        "domain_id": scope.domain_id,
        "tenant_id": scope.tenant_id,
    }


def utc_day(raw_value: object) -> str | None:
    if not isinstance(raw_value, str):
        return None
    candidate = raw_value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).date().isoformat()
