"""Endpoint, agent, network and compliance analysis operations.

Inventories are passed to the model as JSON.  Only the caller's free-text
fields are scanned by the safety filter; device inventories routinely name
antivirus products and would otherwise trip the malware pattern.
"""

import json
import math
from typing import Any

from uem_gateway.operations.base import (
    ModelAnswer,
    OperationSpec,
    Payload,
    as_dict,
    as_list,
    as_number,
    as_text,
)

MAX_INVENTORY_CHARS = 12_000


def _inventory(data: Any) -> str:
    encoded = json.dumps(data, sort_keys=True, default=str, indent=2)
    if len(encoded) > MAX_INVENTORY_CHARS:
        return encoded[:MAX_INVENTORY_CHARS] + "\n... (truncated)"
    return encoded


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


# -- endpoints ---------------------------------------------------------------


def _endpoint_prompt(payload: Payload) -> str:
    analysis_type = payload.get("analysis_type") or "network_topology"
    wants_recommendations = (
        "Include actionable recommendations."
        if payload.get("include_recommendations", True)
        else "Do not include recommendations."
    )
    return (
        f"Perform a {analysis_type} analysis of these managed endpoints.\n"
        f"{_inventory(payload.get('endpoint_data', []))}\n"
        f"{wants_recommendations}\n"
        'Respond with a JSON object: {"discoveredDevices": int, '
        '"securityRisk": "low"|"medium"|"high"|"critical", "anomalies": [str], '
        '"recommendations": [str], "confidence": 0-1, "networkHealth": 0-100}'
    )


def _endpoint_result(payload: Payload, answer: ModelAnswer) -> Payload:
    endpoints = payload.get("endpoint_data", [])
    recommendations = (
        as_list(answer, "recommendations") if payload.get("include_recommendations", True) else []
    )
    return {
        "analysis_type": payload.get("analysis_type") or "network_topology",
        "discovered_devices": int(as_number(answer, "discoveredDevices", len(endpoints))),
        "security_risk": as_text(answer, "securityRisk", "medium"),
        "anomalies": as_list(answer, "anomalies"),
        "recommendations": recommendations,
        "confidence": _clamp(as_number(answer, "confidence", 0.7), 0.0, 1.0),
        "network_health": _clamp(as_number(answer, "networkHealth", 75), 0, 100),
    }


ANALYZE_ENDPOINTS = OperationSpec(
    name="endpoint-analysis",
    artifact_kind="analysis_report",
    request_type="analyze",
    temperature=0.2,
    system_prompt=(
        "You are a network security analyst for an endpoint management platform. "
        "Assess device inventories for risk and health."
    ),
    build_prompt=_endpoint_prompt,
    shape_result=_endpoint_result,
    scan_text=lambda payload: payload.get("analysis_type") or "",
    describe=lambda payload: (
        f"Endpoint analysis of {len(payload.get('endpoint_data', []))} devices"
    ),
    confidence=lambda data: data.get("confidence"),
)


# -- agents ------------------------------------------------------------------


def _agent_prompt(payload: Payload) -> str:
    focus = payload.get("focus")
    return (
        "Analyze the performance and security posture of these management agents.\n"
        f"{_inventory(payload.get('agent_data', []))}\n"
        + (f"Focus on: {focus}\n" if focus else "")
        + 'Respond with a JSON object: {"overallHealth": 0-100, '
        '"performanceAnalysis": [str], "securityInsights": [str], '
        '"optimizationSuggestions": [str], "anomalyDetection": [str], '
        '"trendsAnalysis": [str], "executiveSummary": str}'
    )


def _agent_result(payload: Payload, answer: ModelAnswer) -> Payload:
    return {
        "overall_health": _clamp(as_number(answer, "overallHealth", 75), 0, 100),
        "performance_analysis": as_list(answer, "performanceAnalysis"),
        "security_insights": as_list(answer, "securityInsights"),
        "optimization_suggestions": as_list(answer, "optimizationSuggestions"),
        "anomaly_detection": as_list(answer, "anomalyDetection"),
        "trends_analysis": as_list(answer, "trendsAnalysis"),
        "executive_summary": as_text(answer, "executiveSummary", "Analysis unavailable."),
    }


ANALYZE_AGENTS = OperationSpec(
    name="agent-analysis",
    artifact_kind="analysis_report",
    request_type="analyze",
    temperature=0.2,
    system_prompt=(
        "You are an endpoint agent fleet analyst. Identify performance problems, "
        "security concerns and optimization opportunities."
    ),
    build_prompt=_agent_prompt,
    shape_result=_agent_result,
    scan_text=lambda payload: payload.get("focus") or "",
    describe=lambda payload: f"Agent analysis of {len(payload.get('agent_data', []))} agents",
)


# -- network anomalies -------------------------------------------------------


def _anomaly_prompt(payload: Payload) -> str:
    notes = payload.get("notes")
    return (
        "Detect anomalies in this network telemetry.\n"
        f"{_inventory(payload.get('network_data', {}))}\n"
        + (f"Operator notes: {notes}\n" if notes else "")
        + 'Respond with a JSON object: {"anomalies": [str], "riskScore": 0-100, '
        '"recommendations": [str], "confidence": 0-1}'
    )


def _anomaly_result(payload: Payload, answer: ModelAnswer) -> Payload:
    return {
        "anomalies": as_list(answer, "anomalies"),
        "risk_score": _clamp(as_number(answer, "riskScore", 50), 0, 100),
        "recommendations": as_list(answer, "recommendations"),
        "confidence": _clamp(as_number(answer, "confidence", 0.7), 0.0, 1.0),
    }


DETECT_NETWORK_ANOMALIES = OperationSpec(
    name="network-anomaly-detection",
    artifact_kind="analysis_report",
    request_type="analyze",
    temperature=0.1,
    system_prompt=(
        "You are a network anomaly detection specialist. Flag unusual traffic, "
        "devices and behaviour."
    ),
    build_prompt=_anomaly_prompt,
    shape_result=_anomaly_result,
    scan_text=lambda payload: payload.get("notes") or "",
    describe=lambda payload: "Network anomaly detection",
    confidence=lambda data: data.get("confidence"),
)


# -- compliance --------------------------------------------------------------


def _compliance_prompt(payload: Payload) -> str:
    frameworks = ", ".join(payload["frameworks"])
    scope = payload.get("scope_description")
    return (
        f"Produce a compliance report against: {frameworks}.\n"
        + (f"Scope: {scope}\n" if scope else "")
        + f"Evidence:\n{_inventory(payload.get('data', {}))}\n"
        'Respond with a JSON object: {"overallScore": 0-100, '
        '"frameworkScores": {str: 0-100}, "findings": [str], '
        '"recommendations": [str], "executiveSummary": str}'
    )


def _compliance_result(payload: Payload, answer: ModelAnswer) -> Payload:
    scores = as_dict(answer, "frameworkScores")
    # frameworks the model did not score are left out rather than reported as null
    framework_scores: dict[str, float] = {}
    for name in scores:
        score = as_number(scores, name, math.nan)
        if not math.isnan(score):
            framework_scores[str(name)] = _clamp(score, 0, 100)
    return {
        "frameworks": list(payload["frameworks"]),
        "overall_score": _clamp(as_number(answer, "overallScore", 0), 0, 100),
        "framework_scores": framework_scores,
        "findings": as_list(answer, "findings"),
        "recommendations": as_list(answer, "recommendations"),
        "executive_summary": as_text(answer, "executiveSummary"),
    }


GENERATE_COMPLIANCE_REPORT = OperationSpec(
    name="compliance-report",
    artifact_kind="analysis_report",
    request_type="report",
    temperature=0.1,
    system_prompt=(
        "You are a compliance auditor for managed endpoints. Score evidence against "
        "the requested frameworks and summarise the gaps."
    ),
    build_prompt=_compliance_prompt,
    shape_result=_compliance_result,
    scan_text=lambda payload: payload.get("scope_description") or "",
    describe=lambda payload: "Compliance report: " + ", ".join(payload["frameworks"]),
)
