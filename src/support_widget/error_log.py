"""Best-effort remote error sink writing to the ``error_logs`` table."""

from __future__ import annotations

import traceback
from typing import Any, Optional

from support_widget.config import ErrorLogConfig
from support_widget.core.errors import SupportWidgetError
from support_widget.gateway.client import ServiceClient
from support_widget.log import get_logger

logger = get_logger(__name__)


class ErrorLogger:
    """Records client-side failures for later inspection.

    Failures to log are swallowed after a local warning so a broken sink can
    never cause a logging loop.
    """

    def __init__(self, client: ServiceClient, config: ErrorLogConfig | None = None):
        self._client = client
        self._config = config or ErrorLogConfig()

    async def log(
        self,
        error_message: str,
        *,
        source: str = "frontend",
        error_code: Optional[str] = None,
        error_stack: Optional[str] = None,
        route: Optional[str] = None,
        method: Optional[str] = None,
        table_name: Optional[str] = None,
        function_name: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        request_payload: Any = None,
        extra_context: Any = None,
    ) -> bool:
        """Insert one error row; returns False if the sink itself failed."""
        if not self._config.enabled:
            return False
        row = {
            "source": source,
            "environment": self._config.environment,
            "error_code": error_code,
            "error_message": error_message,
            "error_stack": error_stack,
            "route": route,
            "method": method,
            "table_name": table_name,
            "function_name": function_name,
            "user_id": user_id,
            "client_token": self._client.client_token,
            "session_id": session_id,
            "request_payload": request_payload,
            "extra_context": extra_context,
        }
        try:
            await self._client.insert("error_logs", {k: v for k, v in row.items() if v is not None})
        except Exception as e:
            logger.warning("error_log_failed", error=str(e), original=error_message)
            return False
        return True

    async def log_exception(
        self, exc: BaseException, *, function_name: str | None = None, **context: Any
    ) -> bool:
        code = exc.code if isinstance(exc, SupportWidgetError) else type(exc).__name__
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return await self.log(
            str(exc) or type(exc).__name__,
            error_code=code,
            error_stack=stack,
            function_name=function_name,
            table_name=getattr(exc, "table", None),
            **context,
        )
