from typing import Any, Literal

from pydantic import BaseModel, Field


class ScriptGenerationRequest(BaseModel):
    purpose: str = Field(min_length=1)
    target_os: Literal["windows", "linux", "macos", "cross-platform"]
    script_type: Literal["powershell", "bash", "python", "wmi"]
    requirements: list[str] = Field(default_factory=list)
    complexity: Literal["basic", "intermediate", "advanced"] = "basic"
    template: str | None = None
    custom_instructions: str | None = None


class ScriptEnhancementRequest(BaseModel):
    original_script: str = Field(min_length=1)
    script_type: str = Field(min_length=1)
    enhancement_goals: list[str] = Field(min_length=1)
    preserve_compatibility: bool = False


class ScriptConversionRequest(BaseModel):
    original_script: str = Field(min_length=1)
    source_language: str = Field(min_length=1)
    target_language: str = Field(min_length=1)
    preserve_functionality: bool = True
    add_comments: bool = False


class EndpointAnalysisRequest(BaseModel):
    endpoint_data: list[dict[str, Any]] = Field(default_factory=list)
    analysis_type: str | None = None
    include_recommendations: bool = True


class AgentAnalysisRequest(BaseModel):
    agent_data: list[dict[str, Any]] = Field(default_factory=list)
    focus: str | None = None


class NetworkAnomalyRequest(BaseModel):
    network_data: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None


class ComplianceReportRequest(BaseModel):
    frameworks: list[str] = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    scope_description: str | None = None


class ResponseMetadata(BaseModel):
    request_id: str
    processing_time_ms: int
    tokens_used: int
    cost: float
    cached: bool
    model: str
    confidence: float | None = None


class AuditStamp(BaseModel):
    user_id: str
    timestamp: str
    endpoint: str
    success: bool


class GatewayResponse(BaseModel):
    data: dict[str, Any]
    metadata: ResponseMetadata
    audit: AuditStamp


class ConfigUpdate(BaseModel):
    max_daily_cost: float | None = Field(default=None, gt=0)
    rate_limit_requests: int | None = Field(default=None, ge=1)
    rate_limit_window_minutes: int | None = Field(default=None, ge=1)
    cache_ttl_minutes: int | None = Field(default=None, ge=0)
    content_filtering_enabled: bool | None = None
    audit_logging_enabled: bool | None = None
