from dataclasses import dataclass, field
from typing import Any, Protocol


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        error_type: str = "provider",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_type = error_type


@dataclass(frozen=True)
class ModelRequest:
    operation: str
    model: str
    messages: list[dict[str, str]]
    temperature: float = 0.3
    max_tokens: int | None = None
    json_response: bool = True


@dataclass
class ModelResponse:
    model: str
    content: str
    parsed: dict[str, Any] = field(default_factory=dict)
    # None when the provider did not report usage
    tokens_in: int | None = None
    tokens_out: int | None = None

    @property
    def has_usage(self) -> bool:
        return self.tokens_in is not None and self.tokens_out is not None


class ModelInvoker(Protocol):
    async def invoke(self, request: ModelRequest) -> ModelResponse:
        """Call the model and return its normalized response."""
