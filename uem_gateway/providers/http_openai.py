"""Model invoker for OpenAI-compatible chat completion endpoints."""

import json

import httpx

from uem_gateway.providers.base import ModelRequest, ModelResponse, ProviderError


class HTTPOpenAIProvider:
    """Calls ``/v1/chat/completions`` and decodes the JSON object answer."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 60.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s

    async def invoke(self, request: ModelRequest) -> ModelResponse:
        body: dict[str, object] = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.json_response:
            body["response_format"] = {"type": "json_object"}

        payload = await self._post("/v1/chat/completions", body)
        return self._normalize(request, payload)

    async def _post(self, path: str, body: dict[str, object]) -> dict[str, object]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                status_code=504,
                code="provider_timeout",
                message=f"Provider request timed out: {exc}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_connection_error",
                message=f"Cannot connect to provider: {exc}",
            ) from exc

        self._raise_for_status(resp)

        try:
            result = resp.json()
        except ValueError as exc:
            raise ProviderError(
                status_code=502,
                code="provider_response_invalid",
                message="Provider returned a non-JSON body",
            ) from exc
        if not isinstance(result, dict):
            raise ProviderError(
                status_code=502,
                code="provider_response_invalid",
                message="Provider response must be an object",
            )
        return result

    @staticmethod
    def _normalize(request: ModelRequest, payload: dict[str, object]) -> ModelResponse:
        content = ""
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            first_choice = choices[0]
            if isinstance(first_choice, dict):
                message = first_choice.get("message")
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    content = message["content"]

        parsed: dict[str, object] = {}
        if request.json_response:
            try:
                decoded = json.loads(content or "{}")
            except json.JSONDecodeError as exc:
                raise ProviderError(
                    status_code=502,
                    code="model_response_invalid",
                    message="Model answer is not valid JSON",
                ) from exc
            if not isinstance(decoded, dict):
                raise ProviderError(
                    status_code=502,
                    code="model_response_invalid",
                    message="Model answer must be a JSON object",
                )
            parsed = decoded

        tokens_in: int | None = None
        tokens_out: int | None = None
        usage = payload.get("usage")
        if isinstance(usage, dict):
            prompt_tokens = usage.get("prompt_tokens")
            completion_tokens = usage.get("completion_tokens")
            if isinstance(prompt_tokens, int) and isinstance(completion_tokens, int):
                tokens_in, tokens_out = prompt_tokens, completion_tokens

        return ModelResponse(
            model=str(payload.get("model") or request.model),
            content=content,
            parsed=parsed,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if resp.status_code in {502, 503}:
            raise ProviderError(
                status_code=resp.status_code,
                code="provider_upstream_error",
                message=f"Provider returned {resp.status_code}",
            )
        if resp.status_code >= 400:
            raise ProviderError(
                status_code=resp.status_code,
                code="provider_error",
                message=f"Provider returned {resp.status_code}",
            )
