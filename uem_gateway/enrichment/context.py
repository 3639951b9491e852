import asyncio
import logging

from uem_gateway.storage.base import Storage

logger = logging.getLogger("uemgw.enrichment")

SECURITY_POLICY_CATEGORY = "security"
MAX_SECURITY_POLICIES = 3


class ContextEnricher:
    """Builds organizational context for outbound prompts.

    Enrichment is best-effort: a failed or slow lookup yields an empty
    string and the pipeline carries on without it.
    """

    def __init__(self, storage: Storage, timeout_s: float = 2.0) -> None:
        self._storage = storage
        self._timeout_s = timeout_s

    async def enrich(self, domain_id: str | None = None, tenant_id: str | None = None) -> str:
        try:
            return await asyncio.wait_for(
                self._build(domain_id, tenant_id), timeout=self._timeout_s
            )
        except Exception as exc:
            logger.warning(
                "enrichment_failed",
                extra={
                    "domain_id": domain_id,
                    "tenant_id": tenant_id,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            return ""

    async def _build(self, domain_id: str | None, tenant_id: str | None) -> str:
        sections = [
            await self._organization_context(domain_id, tenant_id),
            await self._security_policy_context(),
        ]
        return "\n".join(section for section in sections if section)

    async def _organization_context(self, domain_id: str | None, tenant_id: str | None) -> str:
        if not domain_id and not tenant_id:
            return ""
        parts: list[str] = []
        domain = await self._storage.get_domain_by_id(domain_id) if domain_id else None
        if domain is not None:
            parts.append(f"Organization: {domain.display_name}")
            if domain.features:
                parts.append(f"Available features: {', '.join(domain.features)}")
        tenant = await self._storage.get_tenant_by_id(tenant_id) if tenant_id else None
        if tenant is not None:
            parts.append(f"Department/Tenant: {tenant.display_name}")
            if tenant.features:
                parts.append(f"Tenant features: {', '.join(tenant.features)}")
        return ". ".join(parts)

    async def _security_policy_context(self) -> str:
        policies = await self._storage.get_active_policies(SECURITY_POLICY_CATEGORY)
        names = [policy.name for policy in policies[:MAX_SECURITY_POLICIES]]
        if not names:
            return ""
        return f"Security policies to consider: {', '.join(names)}"
