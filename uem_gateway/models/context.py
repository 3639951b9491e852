import json
from dataclasses import dataclass
from uuid import uuid4


@dataclass(frozen=True)
class ScopeKey:
    """Isolation unit for rate limits, cached results and daily budgets."""

    user_id: str
    domain_id: str | None = None
    tenant_id: str | None = None

    def as_key(self) -> str:
        # missing ids encode as null; distinct scopes never share a key
        return json.dumps([self.user_id, self.domain_id, self.tenant_id], separators=(",", ":"))

    def __str__(self) -> str:
        return self.as_key()


@dataclass(frozen=True)
class RequestContext:
    """Caller identity and tenancy, resolved once per inbound request."""

    user_id: str
    domain_id: str | None = None
    tenant_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str = ""

    def __post_init__(self) -> None:
        if not self.request_id:
            object.__setattr__(self, "request_id", str(uuid4()))

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(
            user_id=self.user_id,
            domain_id=self.domain_id,
            tenant_id=self.tenant_id,
        )
