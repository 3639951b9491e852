import asyncio
import json

from uem_gateway.providers.base import ModelRequest, ModelResponse, ProviderError

_CANNED_ANSWERS: dict[str, dict[str, object]] = {
    "script-generation": {
        "code": "Write-Output 'stub'",
        "documentation": "Stub documentation.",
        "explanation": "Stub explanation.",
        "analysis": {
            "quality": 4,
            "security": {"score": 4, "issues": [], "recommendations": []},
        },
    },
    "script-enhancement": {
        "enhancedScript": "Write-Output 'enhanced stub'",
        "improvements": ["Added error handling"],
        "risks": [],
        "confidenceScore": 0.9,
        "testingSuggestions": ["Run in a staging tenant first"],
    },
    "script-conversion": {
        "convertedScript": "echo 'stub'",
        "conversionNotes": ["Converted output command"],
        "compatibilityWarnings": [],
        "equivalentFunctions": {"Write-Output": "echo"},
        "testingSuggestions": [],
    },
    "endpoint-analysis": {
        "discoveredDevices": 1,
        "securityRisk": "low",
        "anomalies": [],
        "recommendations": ["Keep agents updated"],
        "confidence": 0.85,
        "networkHealth": 92,
    },
    "agent-analysis": {
        "overallHealth": 88,
        "performanceAnalysis": ["Agents report within heartbeat interval"],
        "securityInsights": [],
        "optimizationSuggestions": [],
        "anomalyDetection": [],
        "trendsAnalysis": [],
        "executiveSummary": "Agent fleet is healthy.",
    },
    "network-anomaly-detection": {
        "anomalies": [],
        "riskScore": 10,
        "recommendations": [],
        "confidence": 0.8,
    },
    "compliance-report": {
        "overallScore": 81,
        "frameworkScores": {},
        "findings": [],
        "recommendations": ["Enable disk encryption on remaining endpoints"],
        "executiveSummary": "Mostly compliant.",
    },
}


class StubProvider:
    """Deterministic offline model.

    Models named ``error-502``, ``error-429``, ``error-timeout`` or
    ``error-invalid-json`` simulate the matching upstream failure.
    Requests are kept in ``calls`` only when ``record_calls`` is set.
    """

    def __init__(
        self,
        delay_s: float = 0.0,
        timeout_delay_s: float = 3600.0,
        record_calls: bool = False,
    ):
        self._delay_s = delay_s
        self._timeout_delay_s = timeout_delay_s
        self._record_calls = record_calls
        self.calls: list[ModelRequest] = []

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        if self._record_calls:
            self.calls.append(request)
        await self._maybe_fail(request.model)
        if self._delay_s:
            await asyncio.sleep(self._delay_s)

        answer = dict(_CANNED_ANSWERS.get(request.operation, {"summary": "Stub response"}))
        content = json.dumps(answer)
        prompt_tokens = max(sum(len(m["content"].split()) for m in request.messages), 1)
        completion_tokens = max(len(content.split()), 1)
        return ModelResponse(
            model=request.model,
            content=content,
            parsed=answer,
            tokens_in=prompt_tokens,
            tokens_out=completion_tokens,
        )

    async def _maybe_fail(self, model: str) -> None:
        if model.startswith("error-timeout"):
            await asyncio.sleep(self._timeout_delay_s)
        if model.startswith("error-429"):
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if model.startswith("error-502"):
            raise ProviderError(
                status_code=502,
                code="provider_bad_gateway",
                message="Provider upstream bad gateway",
            )
        if model.startswith("error-invalid-json"):
            raise ProviderError(
                status_code=502,
                code="model_response_invalid",
                message="Model answer is not valid JSON",
            )
