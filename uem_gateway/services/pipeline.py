from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter


class PipelineState(str, Enum):
    RECEIVED = "RECEIVED"
    RATE_CHECKED = "RATE_CHECKED"
    CACHE_HIT = "CACHE_HIT"
    CACHE_MISS = "CACHE_MISS"
    BUDGET_CHECKED = "BUDGET_CHECKED"
    FILTERED = "FILTERED"
    ENRICHED = "ENRICHED"
    DISPATCHED = "DISPATCHED"
    RESULT_RECEIVED = "RESULT_RECEIVED"
    CACHED = "CACHED"
    PERSISTED = "PERSISTED"
    RESPONDED = "RESPONDED"
    FAILED = "FAILED"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.RECEIVED: frozenset({PipelineState.RATE_CHECKED}),
    PipelineState.RATE_CHECKED: frozenset({PipelineState.CACHE_HIT, PipelineState.CACHE_MISS}),
    PipelineState.CACHE_HIT: frozenset({PipelineState.RESPONDED}),
    PipelineState.CACHE_MISS: frozenset({PipelineState.BUDGET_CHECKED}),
    PipelineState.BUDGET_CHECKED: frozenset({PipelineState.FILTERED}),
    PipelineState.FILTERED: frozenset({PipelineState.ENRICHED}),
    PipelineState.ENRICHED: frozenset({PipelineState.DISPATCHED}),
    PipelineState.DISPATCHED: frozenset({PipelineState.RESULT_RECEIVED}),
    PipelineState.RESULT_RECEIVED: frozenset({PipelineState.CACHED}),
    PipelineState.CACHED: frozenset({PipelineState.PERSISTED}),
    PipelineState.PERSISTED: frozenset({PipelineState.RESPONDED}),
    PipelineState.RESPONDED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class PipelineRun:
    """State history and outcome of one orchestrator execution."""

    operation: str
    request_id: str
    model: str
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    started: float = field(default_factory=perf_counter)
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0
    cached: bool = False
    http_status: int = 200
    error_code: str | None = None
    error_message: str | None = None

    @property
    def state(self) -> PipelineState:
        return self.history[-1]

    @property
    def failed_after(self) -> PipelineState | None:
        if self.state is not PipelineState.FAILED:
            return None
        return self.history[-2]

    @property
    def terminal(self) -> bool:
        return self.state in {PipelineState.RESPONDED, PipelineState.FAILED}

    @property
    def latency_ms(self) -> int:
        return int((perf_counter() - self.started) * 1000)

    def advance(self, state: PipelineState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state.value} -> {state.value}")
        self.history.append(state)

    def fail(
        self,
        http_status: int,
        error_code: str,
        error_message: str,
        keep_usage: bool = False,
    ) -> None:
        """Move to FAILED.

        Usage is zeroed unless ``keep_usage`` is set or the model has already
        answered, in which case its cost was incurred and stays on the run.
        """
        if self.terminal:
            raise InvalidTransitionError(f"{self.state.value} -> FAILED")
        self.history.append(PipelineState.FAILED)
        self.http_status = http_status
        self.error_code = error_code
        self.error_message = error_message
        if not keep_usage and PipelineState.RESULT_RECEIVED not in self.history:
            self.tokens_in = 0
            self.tokens_out = 0
            self.cost = 0.0
