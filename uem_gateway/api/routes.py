from fastapi import APIRouter, Request

from uem_gateway.core.errors import AppError
from uem_gateway.metrics import metrics_router
from uem_gateway.models.context import RequestContext
from uem_gateway.models.operations import (
    AgentAnalysisRequest,
    ComplianceReportRequest,
    ConfigUpdate,
    EndpointAnalysisRequest,
    GatewayResponse,
    NetworkAnomalyRequest,
    ScriptConversionRequest,
    ScriptEnhancementRequest,
    ScriptGenerationRequest,
)
from uem_gateway.services.orchestrator import RequestOrchestrator

router = APIRouter()
router.include_router(metrics_router)


def _orchestrator(request: Request) -> RequestOrchestrator:
    return request.app.state.orchestrator


def _context(request: Request) -> RequestContext:
    return request.state.context


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request) -> dict[str, object]:
    dependencies = _orchestrator(request).readiness()
    status = "ready" if all(value == "ok" for value in dependencies.values()) else "degraded"
    return {"status": status, "dependencies": dependencies}


# -- scripts ------------------------------------------------------------------


@router.post("/v1/ai/scripts/generate", response_model=GatewayResponse)
async def generate_script(request: Request, payload: ScriptGenerationRequest) -> GatewayResponse:
    return await _orchestrator(request).generate_script(payload, _context(request))


@router.post("/v1/ai/scripts/enhance", response_model=GatewayResponse)
async def enhance_script(request: Request, payload: ScriptEnhancementRequest) -> GatewayResponse:
    return await _orchestrator(request).enhance_script(payload, _context(request))


@router.post("/v1/ai/scripts/convert", response_model=GatewayResponse)
async def convert_script(request: Request, payload: ScriptConversionRequest) -> GatewayResponse:
    return await _orchestrator(request).convert_script(payload, _context(request))


# -- analysis -----------------------------------------------------------------


@router.post("/v1/ai/analysis/endpoints", response_model=GatewayResponse)
async def analyze_endpoints(
    request: Request, payload: EndpointAnalysisRequest
) -> GatewayResponse:
    return await _orchestrator(request).analyze_endpoints(payload, _context(request))


@router.post("/v1/ai/analysis/agents", response_model=GatewayResponse)
async def analyze_agents(request: Request, payload: AgentAnalysisRequest) -> GatewayResponse:
    return await _orchestrator(request).analyze_agents(payload, _context(request))


@router.post("/v1/ai/analysis/anomalies", response_model=GatewayResponse)
async def detect_network_anomalies(
    request: Request, payload: NetworkAnomalyRequest
) -> GatewayResponse:
    return await _orchestrator(request).detect_network_anomalies(payload, _context(request))


@router.post("/v1/ai/reports/compliance", response_model=GatewayResponse)
async def generate_compliance_report(
    request: Request, payload: ComplianceReportRequest
) -> GatewayResponse:
    return await _orchestrator(request).generate_compliance_report(payload, _context(request))


# -- admin --------------------------------------------------------------------


@router.get("/v1/admin/cache")
def cache_stats(request: Request) -> dict[str, object]:
    return _orchestrator(request).cache_stats()


@router.delete("/v1/admin/cache")
def clear_cache(request: Request) -> dict[str, object]:
    return {"cleared": _orchestrator(request).clear_cache()}


@router.get("/v1/admin/budget")
async def budget_summary(request: Request) -> dict[str, object]:
    return await _orchestrator(request).budget_summary(_context(request))


@router.get("/v1/admin/rate-limit")
def rate_window(request: Request) -> dict[str, object]:
    return _orchestrator(request).rate_window(_context(request))


@router.get("/v1/admin/config")
def get_config(request: Request) -> dict[str, object]:
    return _orchestrator(request).config_dict()


@router.patch("/v1/admin/config")
def update_config(request: Request, payload: ConfigUpdate) -> dict[str, object]:
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise AppError(422, "config_update_empty", "validation", "No configuration changes given")
    orchestrator = _orchestrator(request)
    orchestrator.update_config(**changes)
    return orchestrator.config_dict()
