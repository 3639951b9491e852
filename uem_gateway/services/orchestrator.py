import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import asdict, fields, replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from uem_gateway.audit.logger import AuditLogger
from uem_gateway.budget.accountant import BudgetExceededError, CostAccountant
from uem_gateway.cache.response_cache import ResponseCache, fingerprint
from uem_gateway.config.settings import GatewayConfig, Settings
from uem_gateway.core.errors import (
    AppError,
    budget_exceeded,
    content_rejected,
    model_invocation_failed,
    model_timeout,
    persistence_failed,
    rate_limit_exceeded,
)
from uem_gateway.enrichment.context import ContextEnricher
from uem_gateway.metrics import record_rejection, record_request
from uem_gateway.models.context import RequestContext
from uem_gateway.models.operations import (
    AgentAnalysisRequest,
    AuditStamp,
    ComplianceReportRequest,
    EndpointAnalysisRequest,
    GatewayResponse,
    NetworkAnomalyRequest,
    ResponseMetadata,
    ScriptConversionRequest,
    ScriptEnhancementRequest,
    ScriptGenerationRequest,
)
from uem_gateway.operations.analysis import (
    ANALYZE_AGENTS,
    ANALYZE_ENDPOINTS,
    DETECT_NETWORK_ANOMALIES,
    GENERATE_COMPLIANCE_REPORT,
)
from uem_gateway.operations.base import OperationSpec
from uem_gateway.operations.scripts import CONVERT_SCRIPT, ENHANCE_SCRIPT, GENERATE_SCRIPT
from uem_gateway.providers.base import ModelInvoker, ModelRequest, ModelResponse, ProviderError
from uem_gateway.ratelimit.limiter import RateLimiter
from uem_gateway.safety.filter import ContentRejectedError, ContentSafetyFilter
from uem_gateway.services.pipeline import PipelineRun, PipelineState
from uem_gateway.storage.base import PersistenceError, Storage

logger = logging.getLogger("uemgw.orchestrator")

# nginx convention for a client that went away before the response
CLIENT_CLOSED_REQUEST = 499

_CONFIG_FIELDS = frozenset(item.name for item in fields(GatewayConfig))


class RequestOrchestrator:
    """Runs every AI operation through the gateway pipeline.

    Rate limit, cache lookup, budget check, content filter, enrichment,
    model dispatch, cache store and artifact persistence run in that order.
    Exactly one usage record is written per execution, whichever way it
    ends.
    """

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        accountant: CostAccountant,
        safety_filter: ContentSafetyFilter,
        enricher: ContextEnricher,
        invoker: ModelInvoker,
        audit_logger: AuditLogger,
    ):
        self._settings = settings
        self._storage = storage
        self._rate_limiter = rate_limiter
        self._cache = cache
        self._accountant = accountant
        self._filter = safety_filter
        self._enricher = enricher
        self._invoker = invoker
        self._audit = audit_logger
        self._config = settings.gateway_config()
        self._sync_collaborators()

    # -- operations ----------------------------------------------------------

    async def generate_script(
        self, request: ScriptGenerationRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(GENERATE_SCRIPT, request, context)

    async def enhance_script(
        self, request: ScriptEnhancementRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(ENHANCE_SCRIPT, request, context)

    async def convert_script(
        self, request: ScriptConversionRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(CONVERT_SCRIPT, request, context)

    async def analyze_endpoints(
        self, request: EndpointAnalysisRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(ANALYZE_ENDPOINTS, request, context)

    async def analyze_agents(
        self, request: AgentAnalysisRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(ANALYZE_AGENTS, request, context)

    async def detect_network_anomalies(
        self, request: NetworkAnomalyRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(DETECT_NETWORK_ANOMALIES, request, context)

    async def generate_compliance_report(
        self, request: ComplianceReportRequest, context: RequestContext
    ) -> GatewayResponse:
        return await self.execute(GENERATE_COMPLIANCE_REPORT, request, context)

    # -- pipeline ------------------------------------------------------------

    async def execute(
        self,
        operation: OperationSpec,
        request: BaseModel | dict[str, Any],
        context: RequestContext,
    ) -> GatewayResponse:
        payload = (
            request.model_dump(mode="json") if isinstance(request, BaseModel) else dict(request)
        )
        run = PipelineRun(
            operation=operation.name,
            request_id=context.request_id,
            model=self._settings.default_model,
        )

        # the strict budget guard, when taken, is released only after the audit write
        async with AsyncExitStack() as guards:
            try:
                return await self._run(operation, payload, context, run, guards)
            except AppError as exc:
                if not run.terminal:
                    run.fail(exc.status_code, exc.code, exc.message)
                raise
            except asyncio.CancelledError:
                if not run.terminal:
                    run.fail(CLIENT_CLOSED_REQUEST, "request_cancelled", "Request was cancelled")
                raise
            except Exception as exc:
                if not run.terminal:
                    run.fail(500, "internal_error", f"{type(exc).__name__}: {exc}")
                logger.exception(
                    "pipeline_crashed",
                    extra={"request_id": run.request_id, "endpoint": operation.name},
                )
                raise AppError(
                    500, "internal_error", "server", "Internal gateway error"
                ) from exc
            finally:
                await self._finish(operation, context, run)

    async def _run(
        self,
        operation: OperationSpec,
        payload: dict[str, Any],
        context: RequestContext,
        run: PipelineRun,
        guards: AsyncExitStack,
    ) -> GatewayResponse:
        config = self._config
        scope = context.scope

        if not self._rate_limiter.admit(
            scope, config.rate_limit_requests, config.rate_limit_window_minutes
        ):
            self._reject(operation, "rate_limit")
            raise rate_limit_exceeded()
        run.advance(PipelineState.RATE_CHECKED)

        cache_key = fingerprint(
            scope, operation.name, payload, key_length=self._settings.cache_key_length
        )
        cached = self._cache.get(cache_key)
        if cached is not None:
            run.advance(PipelineState.CACHE_HIT)
            run.cached = True
            run.model = cached["model"]
            run.advance(PipelineState.RESPONDED)
            return self._response(operation, context, run, cached["data"], cached["confidence"])
        run.advance(PipelineState.CACHE_MISS)

        await guards.enter_async_context(self._accountant.scope_guard(scope))
        try:
            await self._accountant.ensure_within_budget(scope)
        except BudgetExceededError as exc:
            self._reject(operation, "budget")
            raise budget_exceeded(str(exc)) from exc
        run.advance(PipelineState.BUDGET_CHECKED)

        if config.content_filtering_enabled:
            try:
                self._filter.scan(operation.scan_text(payload))
            except ContentRejectedError as exc:
                self._reject(operation, "content")
                raise content_rejected(str(exc)) from exc
        run.advance(PipelineState.FILTERED)

        organization_context = await self._enricher.enrich(
            domain_id=context.domain_id, tenant_id=context.tenant_id
        )
        run.advance(PipelineState.ENRICHED)

        model_request = ModelRequest(
            operation=operation.name,
            model=run.model,
            messages=operation.build_messages(payload, organization_context),
            temperature=operation.temperature,
        )
        run.advance(PipelineState.DISPATCHED)
        model_response = await self._dispatch(model_request)
        run.advance(PipelineState.RESULT_RECEIVED)

        self._account_usage(run, model_request, model_response)
        try:
            data = operation.shape_result(payload, model_response.parsed)
            confidence = operation.confidence(data)
        except (TypeError, ValueError, OverflowError, AttributeError) as exc:
            raise model_invocation_failed(
                f"Model answer could not be shaped: {type(exc).__name__}",
                code="model_response_invalid",
            ) from exc

        self._cache.set(
            cache_key,
            {"data": data, "model": run.model, "confidence": confidence},
            ttl_minutes=config.cache_ttl_minutes,
        )
        run.advance(PipelineState.CACHED)

        artifact = self._artifact_record(operation, payload, context, run, data, confidence)
        try:
            await self._storage.persist_generated_artifact(artifact)
        except PersistenceError as exc:
            error = persistence_failed(f"Failed to persist generated {operation.artifact_kind}")
            run.fail(error.status_code, error.code, str(exc), keep_usage=True)
            raise error from exc
        run.advance(PipelineState.PERSISTED)

        run.advance(PipelineState.RESPONDED)
        return self._response(operation, context, run, data, confidence)

    async def _dispatch(self, model_request: ModelRequest) -> ModelResponse:
        timeout_s = self._settings.model_timeout_s
        try:
            return await asyncio.wait_for(self._invoker.invoke(model_request), timeout=timeout_s)
        except TimeoutError as exc:
            raise model_timeout(timeout_s) from exc
        except ProviderError as exc:
            if exc.status_code == 504:
                raise model_timeout(timeout_s) from exc
            raise model_invocation_failed(exc.message, code=exc.code) from exc

    def _account_usage(
        self, run: PipelineRun, model_request: ModelRequest, model_response: ModelResponse
    ) -> None:
        if model_response.tokens_in is not None and model_response.tokens_out is not None:
            run.tokens_in = model_response.tokens_in
            run.tokens_out = model_response.tokens_out
            run.cost = self._accountant.usage_cost(run.model, run.tokens_in, run.tokens_out)
            return
        run.tokens_in = self._accountant.estimate_tokens(model_request.messages)
        run.tokens_out = self._accountant.estimate_tokens(model_response.content)
        total = run.tokens_in + run.tokens_out
        run.cost = self._accountant.estimate_cost(run.model, total)

    async def _finish(
        self, operation: OperationSpec, context: RequestContext, run: PipelineRun
    ) -> None:
        latency_ms = run.latency_ms
        success = run.state is PipelineState.RESPONDED
        failed_after = run.failed_after
        await self._audit.record(
            context=context,
            endpoint=operation.name,
            request_id=run.request_id,
            success=success,
            tokens_in=run.tokens_in,
            tokens_out=run.tokens_out,
            cost=run.cost,
            latency_ms=latency_ms,
            http_status=run.http_status,
            model=run.model,
            cached=run.cached,
            final_state=run.state.value,
            failed_after=failed_after.value if failed_after else None,
            error_code=run.error_code,
            error_message=run.error_message,
        )

        log_extra = {
            "request_id": run.request_id,
            "user_id": context.user_id,
            "domain_id": context.domain_id,
            "tenant_id": context.tenant_id,
            "endpoint": operation.name,
            "model": run.model,
            "state": run.state.value,
            "cached": run.cached,
            "latency_ms": latency_ms,
            "token_in": run.tokens_in,
            "token_out": run.tokens_out,
            "cost_usd": run.cost,
        }
        if success:
            logger.info("pipeline_completed", extra=log_extra)
        else:
            log_extra["error_code"] = run.error_code
            logger.warning("pipeline_failed", extra=log_extra)

        if self._settings.metrics_enabled:
            record_request(
                endpoint=operation.name,
                model=run.model,
                status_code=run.http_status,
                latency_s=latency_ms / 1000.0,
                cached=run.cached,
                tokens_in=run.tokens_in,
                tokens_out=run.tokens_out,
                cost_usd=run.cost,
            )

    def _reject(self, operation: OperationSpec, reason: str) -> None:
        if self._settings.metrics_enabled:
            record_rejection(endpoint=operation.name, reason=reason)

    @staticmethod
    def _artifact_record(
        operation: OperationSpec,
        payload: dict[str, Any],
        context: RequestContext,
        run: PipelineRun,
        data: dict[str, Any],
        confidence: float | None,
    ) -> dict[str, Any]:
        return {
            "artifact_id": str(uuid4()),
            "kind": operation.artifact_kind,
            "request_type": operation.request_type,
            "operation": operation.name,
            "description": operation.describe(payload),
            "request_id": run.request_id,
            "user_id": context.user_id,
            "domain_id": context.domain_id,
            "tenant_id": context.tenant_id,
            "model": run.model,
            "input": payload,
            "output": data,
            "tokens_used": run.tokens_in + run.tokens_out,
            "cost_usd": run.cost,
            "processing_time_ms": run.latency_ms,
            "confidence": confidence,
            "created_at": datetime.now(UTC).isoformat(),
        }

    @staticmethod
    def _response(
        operation: OperationSpec,
        context: RequestContext,
        run: PipelineRun,
        data: dict[str, Any],
        confidence: float | None,
    ) -> GatewayResponse:
        return GatewayResponse(
            data=data,
            metadata=ResponseMetadata(
                request_id=run.request_id,
                processing_time_ms=run.latency_ms,
                tokens_used=run.tokens_in + run.tokens_out,
                cost=run.cost,
                cached=run.cached,
                model=run.model,
                confidence=confidence,
            ),
            audit=AuditStamp(
                user_id=context.user_id,
                timestamp=datetime.now(UTC).isoformat(),
                endpoint=operation.name,
                success=True,
            ),
        )

    # -- admin ---------------------------------------------------------------

    @property
    def config(self) -> GatewayConfig:
        return self._config

    def update_config(self, **changes: Any) -> GatewayConfig:
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")
        self._config = replace(self._config, **changes)
        self._sync_collaborators()
        logger.info("config_updated", extra={"changed_fields": sorted(changes)})
        return self._config

    def _sync_collaborators(self) -> None:
        self._accountant.default_budget = self._config.max_daily_cost
        self._audit.enabled = self._config.audit_logging_enabled

    def config_dict(self) -> dict[str, Any]:
        return asdict(self._config)

    def cache_stats(self) -> dict[str, object]:
        return self._cache.stats()

    def clear_cache(self) -> int:
        cleared = self._cache.size()
        self._cache.clear()
        logger.info("cache_cleared", extra={"cleared_entries": cleared})
        return cleared

    async def budget_summary(self, context: RequestContext) -> dict[str, object]:
        return await self._accountant.summary(context.scope)

    def rate_window(self, context: RequestContext) -> dict[str, object]:
        window = self._rate_limiter.window(context.scope)
        return {
            **window,
            "limit": self._config.rate_limit_requests,
            "window_minutes": self._config.rate_limit_window_minutes,
        }

    def readiness(self) -> dict[str, str]:
        return {"storage": self._storage.readiness()}
