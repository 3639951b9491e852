from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from uem_gateway.config.settings import get_settings
from uem_gateway.core.errors import app_error_response
from uem_gateway.models.context import RequestContext

USER_HEADER = "x-uem-user-id"
DOMAIN_HEADER = "x-uem-domain-id"
TENANT_HEADER = "x-uem-tenant-id"
SESSION_HEADER = "x-uem-session-id"
ADMIN_PREFIX = "/v1/admin"
BYPASS_PATHS = {"/healthz", "/readyz", "/openapi.json", "/docs", "/docs/oauth2-redirect"}


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns the request id, checks the API key and resolves the caller's scope.

    Admin routes additionally require a key listed in ``admin_api_keys``.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id

        if request.url.path in BYPASS_PATHS:
            return await self._forward(request, call_next, request_id)

        settings = get_settings()
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            return app_error_response(
                401, "auth_missing", "auth", "Missing bearer token", request_id
            )

        token = auth_header.removeprefix("Bearer ").strip()
        is_admin = token in settings.admin_api_key_set
        if not is_admin and token not in settings.api_key_set:
            return app_error_response(401, "auth_invalid", "auth", "Invalid API key", request_id)
        if request.url.path.startswith(ADMIN_PREFIX) and not is_admin:
            return app_error_response(
                403, "admin_required", "auth", "Admin API key required", request_id
            )

        user_id = request.headers.get(USER_HEADER, "").strip()
        if not user_id:
            return app_error_response(
                422,
                "missing_required_headers",
                "validation",
                f"Missing required headers: {USER_HEADER}",
                request_id,
            )

        request.state.is_admin = is_admin
        request.state.context = RequestContext(
            user_id=user_id,
            domain_id=request.headers.get(DOMAIN_HEADER) or None,
            tenant_id=request.headers.get(TENANT_HEADER) or None,
            session_id=request.headers.get(SESSION_HEADER) or None,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            request_id=request_id,
        )
        return await self._forward(request, call_next, request_id)

    @staticmethod
    async def _forward(
        request: Request, call_next: RequestResponseEndpoint, request_id: str
    ) -> Response:
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response
