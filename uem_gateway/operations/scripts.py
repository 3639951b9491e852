"""Script generation, enhancement and conversion operations."""

from uem_gateway.operations.base import (
    ModelAnswer,
    OperationSpec,
    Payload,
    as_dict,
    as_list,
    as_number,
    as_text,
)

FALLBACK_SCRIPT_ANALYSIS: dict[str, object] = {
    "quality": 3,
    "security": {"score": 3, "issues": [], "recommendations": []},
    "performance": {"score": 3, "suggestions": []},
    "maintainability": {"score": 3, "improvements": []},
    "documentation": {"completeness": 3, "suggestions": []},
    "overallRecommendations": [],
}


def _fenced(language: str, code: str) -> str:
    return f"```{language}\n{code}\n```"


# -- generate ----------------------------------------------------------------


def _generation_prompt(payload: Payload) -> str:
    lines = [
        f"Generate a {payload['complexity']} {payload['script_type']} script "
        f"for {payload['target_os']}.",
        f"Purpose: {payload['purpose']}",
    ]
    if payload.get("requirements"):
        lines.append("Requirements:")
        lines.extend(f"- {item}" for item in payload["requirements"])
    if payload.get("template"):
        lines.append(f"Start from this template:\n{payload['template']}")
    if payload.get("custom_instructions"):
        lines.append(f"Additional instructions: {payload['custom_instructions']}")
    lines.append(
        'Respond with a JSON object: {"code": str, "documentation": str, '
        '"explanation": str, "analysis": {"quality": 1-5, "security": {...}}}'
    )
    return "\n".join(lines)


def _generation_result(payload: Payload, answer: ModelAnswer) -> Payload:
    analysis = as_dict(answer, "analysis") or dict(FALLBACK_SCRIPT_ANALYSIS)
    return {
        "code": as_text(answer, "code"),
        "documentation": as_text(answer, "documentation"),
        "explanation": as_text(answer, "explanation"),
        "analysis": analysis,
    }


def _generation_confidence(data: Payload) -> float | None:
    quality = as_number(data.get("analysis", {}), "quality", 0.0)
    return round(min(max(quality / 5, 0.0), 1.0), 2) if quality else None


GENERATE_SCRIPT = OperationSpec(
    name="script-generation",
    artifact_kind="script",
    request_type="generate",
    temperature=0.3,
    system_prompt=(
        "You are an endpoint management automation engineer. Produce safe, "
        "production-ready scripts with documentation."
    ),
    build_prompt=_generation_prompt,
    shape_result=_generation_result,
    scan_text=lambda payload: " ".join(
        [
            payload["purpose"],
            *payload.get("requirements", []),
            payload.get("custom_instructions") or "",
        ]
    ),
    describe=lambda payload: payload["purpose"],
    confidence=_generation_confidence,
)


# -- enhance -----------------------------------------------------------------


def _enhancement_prompt(payload: Payload) -> str:
    goals = "\n".join(f"- {goal}" for goal in payload["enhancement_goals"])
    compatibility = (
        "IMPORTANT: Preserve backward compatibility."
        if payload.get("preserve_compatibility")
        else ""
    )
    return (
        f"Enhance this {payload['script_type']} script.\n"
        f"{_fenced(payload['script_type'], payload['original_script'])}\n"
        f"Enhancement goals:\n{goals}\n{compatibility}\n"
        'Respond with a JSON object: {"enhancedScript": str, "improvements": [str], '
        '"risks": [str], "confidenceScore": 0-1, "testingSuggestions": [str]}'
    )


def _enhancement_result(payload: Payload, answer: ModelAnswer) -> Payload:
    return {
        "original_script": payload["original_script"],
        "enhanced_script": as_text(answer, "enhancedScript", payload["original_script"]),
        "improvements": as_list(answer, "improvements"),
        "risks": as_list(answer, "risks"),
        "confidence_score": as_number(answer, "confidenceScore", 0.8),
        "testing_suggestions": as_list(answer, "testingSuggestions"),
    }


ENHANCE_SCRIPT = OperationSpec(
    name="script-enhancement",
    artifact_kind="script",
    request_type="enhance",
    temperature=0.2,
    system_prompt=(
        "You are an expert script enhancement specialist. Provide production-ready "
        "script improvements with detailed analysis."
    ),
    build_prompt=_enhancement_prompt,
    shape_result=_enhancement_result,
    scan_text=lambda payload: payload["original_script"],
    describe=lambda payload: "Script enhancement: " + ", ".join(payload["enhancement_goals"]),
    confidence=lambda data: data.get("confidence_score"),
)


# -- convert -----------------------------------------------------------------


def _conversion_prompt(payload: Payload) -> str:
    source, target = payload["source_language"], payload["target_language"]
    requirements = [
        f"- Convert to idiomatic {target} code",
        "- Preserve exact functionality"
        if payload.get("preserve_functionality")
        else "- Optimize for target language best practices",
        "- Add explanatory comments" if payload.get("add_comments") else "- Keep comments minimal",
    ]
    return (
        f"Convert this {source} script to {target}.\n"
        f"{_fenced(source, payload['original_script'])}\n"
        "Requirements:\n" + "\n".join(requirements) + "\n"
        'Respond with a JSON object: {"convertedScript": str, "conversionNotes": [str], '
        '"compatibilityWarnings": [str], "equivalentFunctions": {str: str}, '
        '"testingSuggestions": [str]}'
    )


def _conversion_result(payload: Payload, answer: ModelAnswer) -> Payload:
    return {
        "original_script": payload["original_script"],
        "converted_script": as_text(answer, "convertedScript"),
        "conversion_notes": as_list(answer, "conversionNotes"),
        "compatibility_warnings": as_list(answer, "compatibilityWarnings"),
        "equivalent_functions": as_dict(answer, "equivalentFunctions"),
        "testing_suggestions": as_list(answer, "testingSuggestions"),
    }


CONVERT_SCRIPT = OperationSpec(
    name="script-conversion",
    artifact_kind="script",
    request_type="convert",
    temperature=0.1,
    system_prompt=(
        "You are an expert in scripting languages. Convert scripts accurately while "
        "maintaining functionality."
    ),
    build_prompt=_conversion_prompt,
    shape_result=_conversion_result,
    scan_text=lambda payload: payload["original_script"],
    describe=lambda payload: (
        f"Convert script from {payload['source_language']} to {payload['target_language']}"
    ),
)
