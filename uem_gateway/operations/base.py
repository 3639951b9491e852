import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

Payload = dict[str, Any]
ModelAnswer = dict[str, Any]


def _no_confidence(data: Payload) -> float | None:
    return None


@dataclass(frozen=True)
class OperationSpec:
    """Everything operation-specific the orchestrator needs.

    ``shape_result`` turns the model's JSON answer into the response data,
    filling defaults for anything the model left out.  ``scan_text``
    selects the free-text fields the safety filter inspects.
    """

    name: str
    artifact_kind: str
    request_type: str
    temperature: float
    system_prompt: str
    build_prompt: Callable[[Payload], str]
    shape_result: Callable[[Payload, ModelAnswer], Payload]
    scan_text: Callable[[Payload], str]
    describe: Callable[[Payload], str]
    confidence: Callable[[Payload], float | None] = _no_confidence

    def build_messages(self, payload: Payload, organization_context: str) -> list[dict[str, str]]:
        prompt = self.build_prompt(payload)
        if organization_context:
            prompt = f"{prompt}\n\nOrganizational context:\n{organization_context}"
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]


def as_list(answer: ModelAnswer, key: str) -> list[Any]:
    value = answer.get(key)
    return list(value) if isinstance(value, list) else []


def as_dict(answer: ModelAnswer, key: str) -> dict[str, Any]:
    value = answer.get(key)
    return dict(value) if isinstance(value, dict) else {}


def as_number(answer: ModelAnswer, key: str, default: float) -> float:
    value = answer.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return default
    if not math.isfinite(value):
        return default
    return float(value)


def as_text(answer: ModelAnswer, key: str, default: str = "") -> str:
    value = answer.get(key)
    return value if isinstance(value, str) else default
