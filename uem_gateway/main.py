from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from uem_gateway.api.routes import router
from uem_gateway.audit.logger import AuditLogger
from uem_gateway.audit.writer import AuditWriter
from uem_gateway.budget.accountant import CostAccountant
from uem_gateway.cache.response_cache import ResponseCache
from uem_gateway.config.settings import Settings, get_settings
from uem_gateway.core.errors import AppError, app_error_response, request_id_from_request
from uem_gateway.core.logging import configure_logging
from uem_gateway.enrichment.context import ContextEnricher
from uem_gateway.middleware.context import RequestContextMiddleware
from uem_gateway.providers.base import ModelInvoker
from uem_gateway.providers.http_openai import HTTPOpenAIProvider
from uem_gateway.providers.stub import StubProvider
from uem_gateway.ratelimit.limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from uem_gateway.safety.filter import ContentSafetyFilter
from uem_gateway.services.orchestrator import RequestOrchestrator
from uem_gateway.storage.base import Storage
from uem_gateway.storage.memory import InMemoryStorage
from uem_gateway.storage.sqlite import SQLiteStorage


def _build_storage(settings: Settings) -> Storage:
    backend = settings.storage_backend_normalized
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(path=settings.storage_sqlite_path)
    raise RuntimeError(f"Unsupported UEMGW_STORAGE_BACKEND value: {backend}")


def _build_rate_limiter(settings: Settings) -> RateLimiter:
    backend = settings.rate_limit_backend_normalized
    if backend == "memory":
        return InMemoryRateLimiter()
    if backend == "redis":
        if not settings.rate_limit_redis_url:
            raise RuntimeError("UEMGW_RATE_LIMIT_REDIS_URL is required when backend=redis")
        return RedisRateLimiter(
            redis_url=settings.rate_limit_redis_url,
            key_prefix=settings.rate_limit_redis_prefix,
        )
    raise RuntimeError(f"Unsupported UEMGW_RATE_LIMIT_BACKEND value: {backend}")


def _build_invoker(settings: Settings) -> ModelInvoker:
    provider = settings.provider_name_normalized
    if provider == "stub":
        return StubProvider()
    if provider in {"openai", "openai_compatible"}:
        if not settings.provider_api_key:
            raise RuntimeError("UEMGW_PROVIDER_API_KEY is required when provider=openai")
        return HTTPOpenAIProvider(
            base_url=settings.provider_base_url,
            api_key=settings.provider_api_key,
            timeout_s=settings.model_timeout_s,
        )
    raise RuntimeError(f"Unsupported UEMGW_PROVIDER_NAME value: {provider}")


def build_orchestrator(
    settings: Settings,
    storage: Storage | None = None,
    invoker: ModelInvoker | None = None,
) -> RequestOrchestrator:
    storage = storage if storage is not None else _build_storage(settings)
    audit_writer = AuditWriter(
        schema_path=settings.contracts_dir / "usage-record.schema.json",
        log_path=settings.audit_log_path,
    )
    return RequestOrchestrator(
        settings=settings,
        storage=storage,
        rate_limiter=_build_rate_limiter(settings),
        cache=ResponseCache(),
        accountant=CostAccountant(
            storage=storage,
            default_budget=settings.max_daily_cost,
            tenant_budgets=settings.budget_tenant_override_map,
            domain_budgets=settings.budget_domain_override_map,
            strict=settings.budget_strict_enforcement,
        ),
        safety_filter=ContentSafetyFilter(),
        enricher=ContextEnricher(storage=storage, timeout_s=settings.enrichment_timeout_s),
        invoker=invoker if invoker is not None else _build_invoker(settings),
        audit_logger=AuditLogger(
            storage=storage,
            writer=audit_writer,
            enabled=settings.audit_logging_enabled,
            timeout_s=settings.audit_timeout_s,
        ),
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="UEM AI Gateway", version="0.1.0")

    app.add_middleware(RequestContextMiddleware)

    app.state.orchestrator = build_orchestrator(settings)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            exc.status_code, exc.code, exc.error_type, exc.message, request_id
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            422, "request_validation_failed", "validation", str(exc), request_id
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            500, "internal_error", "server", "Internal server error", request_id
        )

    app.include_router(router)
    return app


app = create_app()
