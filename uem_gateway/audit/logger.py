import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from uem_gateway.audit.writer import AuditWriter
from uem_gateway.models.context import RequestContext
from uem_gateway.storage.base import Storage

logger = logging.getLogger("uemgw.audit")


class AuditLogger:
    """Persists one usage record per pipeline execution.

    Recording never raises: validation, storage and trail failures are
    logged and swallowed so the primary request is unaffected.
    """

    def __init__(
        self,
        storage: Storage,
        writer: AuditWriter,
        enabled: bool = True,
        timeout_s: float = 2.0,
    ) -> None:
        self._storage = storage
        self._writer = writer
        self.enabled = enabled
        self._timeout_s = timeout_s

    async def record(
        self,
        context: RequestContext,
        endpoint: str,
        request_id: str,
        success: bool,
        tokens_in: int,
        tokens_out: int,
        cost: float,
        latency_ms: int,
        http_status: int,
        model: str,
        cached: bool = False,
        final_state: str = "RESPONDED",
        failed_after: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> dict[str, Any] | None:
        if not self.enabled:
            return None

        finished_at = datetime.now(UTC)
        started_at = finished_at - timedelta(milliseconds=latency_ms)
        record: dict[str, Any] = {
            "record_id": str(uuid4()),
            "request_id": request_id,
            "user_id": context.user_id,
            "domain_id": context.domain_id,
            "tenant_id": context.tenant_id,
            "session_id": context.session_id,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "endpoint": endpoint,
            "method": "POST",
            "model": model,
            "success": success,
            "cached": cached,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "total_tokens": tokens_in + tokens_out,
            "cost_usd": cost,
            "latency_ms": latency_ms,
            "http_status": http_status,
            "final_state": final_state,
            "failed_after": failed_after,
            "error_code": error_code,
            "error_message": error_message,
            "started_at": started_at.isoformat(),
            "finished_at": finished_at.isoformat(),
            "created_at": finished_at.isoformat(),
        }

        try:
            self._writer.validate(record)
            await asyncio.wait_for(
                self._storage.persist_usage_record(record), timeout=self._timeout_s
            )
            if self._writer.log_path is not None:
                self._writer.write_event(record)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                extra={
                    "request_id": request_id,
                    "endpoint": endpoint,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
        return record
