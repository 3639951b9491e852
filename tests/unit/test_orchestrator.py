import asyncio
from datetime import UTC, datetime
from typing import Any

import pytest

from uem_gateway.config.settings import Settings
from uem_gateway.core.errors import AppError
from uem_gateway.main import build_orchestrator
from uem_gateway.models.context import RequestContext
from uem_gateway.models.operations import (
    ComplianceReportRequest,
    EndpointAnalysisRequest,
    ScriptConversionRequest,
    ScriptEnhancementRequest,
    ScriptGenerationRequest,
)
from uem_gateway.providers.base import ModelRequest, ModelResponse
from uem_gateway.providers.stub import StubProvider
from uem_gateway.services.orchestrator import RequestOrchestrator
from uem_gateway.storage.base import Domain, PersistenceError
from uem_gateway.storage.memory import InMemoryStorage


def _build(
    storage: InMemoryStorage | None = None, **overrides: Any
) -> tuple[RequestOrchestrator, InMemoryStorage, StubProvider]:
    settings = Settings(audit_log_path=None, metrics_enabled=False, **overrides)
    storage = storage if storage is not None else InMemoryStorage()
    invoker = StubProvider(record_calls=True)
    return build_orchestrator(settings, storage=storage, invoker=invoker), storage, invoker


def _context(user_id: str = "user-1", tenant_id: str | None = "tenant-a") -> RequestContext:
    return RequestContext(user_id=user_id, domain_id="domain-a", tenant_id=tenant_id)


def _generation(purpose: str = "List stopped services") -> ScriptGenerationRequest:
    return ScriptGenerationRequest(
        purpose=purpose,
        target_os="windows",
        script_type="powershell",
        requirements=["log output"],
    )


def _usage(storage: InMemoryStorage) -> list[dict[str, Any]]:
    return asyncio.run(storage.list_usage_records())


def _expect_error(coro: Any) -> AppError:
    with pytest.raises(AppError) as exc_info:
        asyncio.run(coro)
    return exc_info.value


def test_generate_script_dispatches_and_records_usage() -> None:
    orchestrator, storage, invoker = _build()

    response = asyncio.run(orchestrator.generate_script(_generation(), _context()))

    assert response.data["code"] == "Write-Output 'stub'"
    assert response.metadata.cached is False
    assert response.metadata.tokens_used > 0
    assert response.metadata.cost > 0
    assert response.metadata.confidence == 0.8
    assert response.audit.endpoint == "script-generation"
    assert response.audit.success is True
    assert len(invoker.calls) == 1

    usage = _usage(storage)
    assert len(usage) == 1
    assert usage[0]["final_state"] == "RESPONDED"
    assert usage[0]["cost_usd"] == response.metadata.cost

    artifacts = storage.artifacts
    assert len(artifacts) == 1
    assert artifacts[0]["kind"] == "script"
    assert artifacts[0]["request_type"] == "generate"
    assert artifacts[0]["description"] == "List stopped services"


def test_identical_request_is_served_from_cache() -> None:
    orchestrator, storage, invoker = _build()

    first = asyncio.run(orchestrator.generate_script(_generation(), _context()))
    second = asyncio.run(orchestrator.generate_script(_generation(), _context()))

    assert second.metadata.cached is True
    assert second.metadata.tokens_used == 0
    assert second.metadata.cost == 0.0
    assert second.data == first.data
    assert len(invoker.calls) == 1

    usage = _usage(storage)
    assert [row["cached"] for row in usage] == [False, True]
    assert usage[1]["success"] is True
    assert usage[1]["final_state"] == "RESPONDED"
    assert len(storage.artifacts) == 1


def test_cache_is_isolated_per_scope() -> None:
    orchestrator, _, invoker = _build()

    asyncio.run(orchestrator.generate_script(_generation(), _context(tenant_id="tenant-a")))
    other = asyncio.run(orchestrator.generate_script(_generation(), _context(tenant_id="tenant-b")))

    assert other.metadata.cached is False
    assert len(invoker.calls) == 2


def test_rate_limited_request_is_rejected_and_audited() -> None:
    orchestrator, storage, invoker = _build(rate_limit_requests=2)

    asyncio.run(orchestrator.generate_script(_generation("one"), _context()))
    asyncio.run(orchestrator.generate_script(_generation("two"), _context()))
    error = _expect_error(orchestrator.generate_script(_generation("three"), _context()))

    assert error.status_code == 429
    assert error.code == "rate_limit_exceeded"
    assert len(invoker.calls) == 2

    last = _usage(storage)[-1]
    assert last["success"] is False
    assert last["http_status"] == 429
    assert last["final_state"] == "FAILED"
    assert last["failed_after"] == "RECEIVED"
    assert last["cost_usd"] == 0.0


def test_other_scope_is_not_rate_limited() -> None:
    orchestrator, _, _ = _build(rate_limit_requests=1)

    asyncio.run(orchestrator.generate_script(_generation(), _context(user_id="user-1")))
    response = asyncio.run(orchestrator.generate_script(_generation(), _context(user_id="user-2")))

    assert response.metadata.cached is False


def test_unsafe_content_is_rejected_before_dispatch() -> None:
    orchestrator, storage, invoker = _build()

    error = _expect_error(
        orchestrator.generate_script(_generation("Clean the disk with rm -rf /"), _context())
    )

    assert error.status_code == 400
    assert error.code == "content_rejected"
    assert invoker.calls == []
    usage = _usage(storage)
    assert len(usage) == 1
    assert usage[0]["failed_after"] == "BUDGET_CHECKED"
    assert usage[0]["cost_usd"] == 0.0


def test_enhancement_scans_the_original_script() -> None:
    orchestrator, _, invoker = _build()
    request = ScriptEnhancementRequest(
        original_script="format c:",
        script_type="batch",
        enhancement_goals=["add logging"],
    )

    error = _expect_error(orchestrator.enhance_script(request, _context()))

    assert error.code == "content_rejected"
    assert invoker.calls == []


def test_filter_can_be_disabled_at_runtime() -> None:
    orchestrator, _, invoker = _build()
    orchestrator.update_config(content_filtering_enabled=False)

    request = _generation("remove the backdoor account")
    asyncio.run(orchestrator.generate_script(request, _context()))

    assert len(invoker.calls) == 1


def test_exhausted_budget_rejects_without_dispatch() -> None:
    storage = InMemoryStorage()
    asyncio.run(
        storage.persist_usage_record(
            {
                "user_id": "user-1",
                "domain_id": "domain-a",
                "tenant_id": "tenant-a",
                "cost_usd": 10.01,
                "created_at": datetime.now(UTC).isoformat(),
            }
        )
    )
    orchestrator, _, invoker = _build(storage=storage, max_daily_cost=10.0)

    error = _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert error.status_code == 429
    assert error.code == "budget_exceeded"
    assert invoker.calls == []
    assert _usage(storage)[-1]["failed_after"] == "CACHE_MISS"


def test_tenant_budget_override_applies() -> None:
    storage = InMemoryStorage()
    asyncio.run(
        storage.persist_usage_record(
            {
                "user_id": "user-1",
                "domain_id": "domain-a",
                "tenant_id": "tenant-a",
                "cost_usd": 2.0,
                "created_at": datetime.now(UTC).isoformat(),
            }
        )
    )
    orchestrator, _, _ = _build(storage=storage, budget_tenant_overrides="tenant-a:2")

    error = _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert error.code == "budget_exceeded"


def test_model_timeout_is_reported_as_504() -> None:
    orchestrator, storage, _ = _build(default_model="error-timeout", model_timeout_s=0.05)

    error = _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert error.status_code == 504
    assert error.code == "model_timeout"
    usage = _usage(storage)[-1]
    assert usage["success"] is False
    assert usage["failed_after"] == "DISPATCHED"
    assert usage["tokens_in"] == 0
    assert usage["cost_usd"] == 0.0


def test_provider_failure_is_reported_as_502() -> None:
    orchestrator, storage, _ = _build(default_model="error-502")

    error = _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert error.status_code == 502
    assert error.code == "provider_bad_gateway"
    assert _usage(storage)[-1]["http_status"] == 502


def test_invalid_model_answer_is_reported_as_502() -> None:
    orchestrator, _, _ = _build(default_model="error-invalid-json")

    error = _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert error.status_code == 502
    assert error.code == "model_response_invalid"


def test_failed_results_are_not_cached() -> None:
    orchestrator, _, _ = _build(default_model="error-502")

    _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert orchestrator.cache_stats()["size"] == 0


def test_artifact_persistence_failure_surfaces_but_keeps_cache() -> None:
    class _ArtifactFailingStorage(InMemoryStorage):
        async def persist_generated_artifact(self, record: dict[str, Any]) -> None:
            raise PersistenceError("scripts table locked")

    orchestrator, storage, _ = _build(storage=_ArtifactFailingStorage())

    error = _expect_error(orchestrator.generate_script(_generation(), _context()))

    assert error.status_code == 500
    assert error.code == "persistence_failed"
    assert orchestrator.cache_stats()["size"] == 1
    usage = _usage(storage)[-1]
    assert usage["failed_after"] == "CACHED"
    assert usage["cost_usd"] > 0


def test_audit_failure_does_not_fail_request() -> None:
    class _UsageFailingStorage(InMemoryStorage):
        async def persist_usage_record(self, record: dict[str, Any]) -> None:
            raise PersistenceError("usage table locked")

    orchestrator, _, _ = _build(storage=_UsageFailingStorage())

    response = asyncio.run(orchestrator.generate_script(_generation(), _context()))

    assert response.audit.success is True


def test_audit_can_be_disabled_at_runtime() -> None:
    orchestrator, storage, _ = _build()
    orchestrator.update_config(audit_logging_enabled=False)

    asyncio.run(orchestrator.generate_script(_generation(), _context()))

    assert _usage(storage) == []


@pytest.mark.parametrize(
    ("overrides", "purpose"),
    [
        ({}, "List stopped services"),
        ({"rate_limit_requests": 0}, "List stopped services"),
        ({}, "format c: now"),
        ({"default_model": "error-502"}, "List stopped services"),
        ({"default_model": "error-timeout", "model_timeout_s": 0.05}, "List stopped services"),
    ],
)
def test_every_execution_is_audited_exactly_once(overrides: dict[str, Any], purpose: str) -> None:
    orchestrator, storage, _ = _build(**overrides)

    try:
        asyncio.run(orchestrator.generate_script(_generation(purpose), _context()))
    except AppError:
        pass

    assert len(_usage(storage)) == 1


def test_organization_context_is_sent_to_model() -> None:
    storage = InMemoryStorage(domains=[Domain("domain-a", "Acme Corp", ("patching",))])
    orchestrator, _, invoker = _build(storage=storage)

    asyncio.run(orchestrator.generate_script(_generation(), _context()))

    prompt = invoker.calls[0].messages[-1]["content"]
    assert "Organization: Acme Corp" in prompt
    assert invoker.calls[0].operation == "script-generation"


def test_conversion_keeps_original_script() -> None:
    orchestrator, _, _ = _build()
    request = ScriptConversionRequest(
        original_script="Write-Output 'hi'",
        source_language="powershell",
        target_language="bash",
    )

    response = asyncio.run(orchestrator.convert_script(request, _context()))

    assert response.data["original_script"] == "Write-Output 'hi'"
    assert response.data["converted_script"] == "echo 'stub'"
    assert response.data["equivalent_functions"] == {"Write-Output": "echo"}


def test_endpoint_inventory_is_not_content_filtered() -> None:
    orchestrator, storage, _ = _build()
    request = EndpointAnalysisRequest(
        endpoint_data=[{"hostname": "ws-01", "software": ["Contoso Antivirus"]}],
    )

    response = asyncio.run(orchestrator.analyze_endpoints(request, _context()))

    assert response.data["discovered_devices"] == 1
    assert response.data["security_risk"] == "low"
    assert response.metadata.confidence == 0.85
    assert storage.artifacts[0]["kind"] == "analysis_report"


def test_compliance_report_lists_requested_frameworks() -> None:
    orchestrator, _, _ = _build()
    request = ComplianceReportRequest(frameworks=["CIS", "NIST"], data={"encrypted": 40})

    response = asyncio.run(orchestrator.generate_compliance_report(request, _context()))

    assert response.data["overall_score"] == 81
    assert response.data["framework_scores"] == {}


def test_concurrent_requests_respect_rate_limit() -> None:
    orchestrator, storage, _ = _build(rate_limit_requests=100)

    async def one(index: int) -> bool:
        try:
            await orchestrator.generate_script(_generation(f"task {index}"), _context())
        except AppError as exc:
            assert exc.code == "rate_limit_exceeded"
            return False
        return True

    async def main() -> list[bool]:
        return await asyncio.gather(*(one(index) for index in range(120)))

    results = asyncio.run(main())

    assert results.count(True) == 100
    assert len(_usage(storage)) == 120


def test_update_config_rejects_unknown_fields() -> None:
    orchestrator, _, _ = _build()
    with pytest.raises(ValueError, match="Unknown configuration fields"):
        orchestrator.update_config(max_tokens=10)


def test_update_config_changes_default_budget() -> None:
    orchestrator, _, _ = _build()

    orchestrator.update_config(max_daily_cost=25.0)
    summary = asyncio.run(orchestrator.budget_summary(_context()))

    assert summary["daily_budget"] == 25.0
    assert orchestrator.config_dict()["max_daily_cost"] == 25.0


def test_clear_cache_reports_removed_entries() -> None:
    orchestrator, _, invoker = _build()
    asyncio.run(orchestrator.generate_script(_generation(), _context()))

    assert orchestrator.clear_cache() == 1
    asyncio.run(orchestrator.generate_script(_generation(), _context()))
    assert len(invoker.calls) == 2


def test_rate_window_reports_configured_limit() -> None:
    orchestrator, _, _ = _build(rate_limit_requests=5)
    asyncio.run(orchestrator.generate_script(_generation(), _context()))

    window = orchestrator.rate_window(_context())

    assert window["count"] == 1
    assert window["limit"] == 5


class _FixedAnswerProvider:
    def __init__(self, parsed: Any, tokens: int = 50_000, delay_s: float = 0.0) -> None:
        self._parsed = parsed
        self._tokens = tokens
        self._delay_s = delay_s

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return ModelResponse(
            model=request.model,
            content="{}",
            parsed=self._parsed,
            tokens_in=self._tokens,
            tokens_out=self._tokens,
        )


def _build_with(invoker: Any, **overrides: Any) -> tuple[RequestOrchestrator, InMemoryStorage]:
    settings = Settings(audit_log_path=None, metrics_enabled=False, **overrides)
    storage = InMemoryStorage()
    return build_orchestrator(settings, storage=storage, invoker=invoker), storage


def _inventory_request() -> EndpointAnalysisRequest:
    return EndpointAnalysisRequest(endpoint_data=[{"hostname": "ws-01"}])


def test_unshapeable_answer_is_a_model_failure_that_keeps_cost() -> None:
    orchestrator, storage = _build_with(_FixedAnswerProvider(["not", "an", "object"]))

    error = _expect_error(orchestrator.analyze_endpoints(_inventory_request(), _context()))

    assert error.status_code == 502
    assert error.code == "model_response_invalid"
    usage = _usage(storage)[-1]
    assert usage["final_state"] == "FAILED"
    assert usage["failed_after"] == "RESULT_RECEIVED"
    assert usage["tokens_in"] == 50_000
    assert usage["cost_usd"] > 0
    assert orchestrator.cache_stats()["size"] == 0


def test_failed_answer_cost_counts_against_budget() -> None:
    orchestrator, _ = _build_with(_FixedAnswerProvider(["bad"]), max_daily_cost=0.5)

    _expect_error(orchestrator.analyze_endpoints(_inventory_request(), _context()))
    error = _expect_error(orchestrator.analyze_endpoints(_inventory_request(), _context()))

    assert error.code == "budget_exceeded"


def test_non_finite_numbers_fall_back_to_defaults() -> None:
    answer = {"discoveredDevices": float("inf"), "networkHealth": float("nan")}
    orchestrator, _ = _build_with(_FixedAnswerProvider(answer, tokens=10))

    response = asyncio.run(orchestrator.analyze_endpoints(_inventory_request(), _context()))

    assert response.data["discovered_devices"] == 1
    assert response.data["network_health"] == 75


def test_compliance_scores_keep_only_numeric_frameworks() -> None:
    answer = {"overallScore": 70, "frameworkScores": {"CIS": 120, "NIST": "n/a", "ISO": None}}
    orchestrator, _ = _build_with(_FixedAnswerProvider(answer, tokens=10))
    request = ComplianceReportRequest(frameworks=["CIS", "NIST", "ISO"], data={})

    response = asyncio.run(orchestrator.generate_compliance_report(request, _context()))

    assert response.data["framework_scores"] == {"CIS": 100}


def test_cancelled_request_is_audited_as_failed() -> None:
    orchestrator, storage = _build_with(_FixedAnswerProvider({}, delay_s=5))

    async def main() -> None:
        task = asyncio.create_task(
            orchestrator.analyze_endpoints(_inventory_request(), _context())
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())

    usage = _usage(storage)[-1]
    assert usage["http_status"] == 499
    assert usage["success"] is False
    assert usage["final_state"] == "FAILED"
    assert usage["failed_after"] == "DISPATCHED"
    assert usage["error_code"] == "request_cancelled"
