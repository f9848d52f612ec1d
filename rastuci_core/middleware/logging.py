"""
请求日志中间件

记录入站请求的方法、路径、状态码与耗时，并在响应头返回 X-Trace-Id。
MercadoPago 回调自带 x-request-id，直接沿用为 trace_id 便于和网关日志对照
"""
import json
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import StreamingResponse

from rastuci_core.utils.logger import get_logger, LogContext


# 不记录响应体的路径
SKIP_DETAIL_PATHS = {
    "/healthz",
    "/favicon.ico",
}

# 查询参数中的敏感字段
SENSITIVE_FIELDS = {"token", "access_token", "secret", "password", "email"}

MAX_BODY_LOG_SIZE = 4000


class LoggingMiddleware(BaseHTTPMiddleware):
    """请求日志中间件"""

    def __init__(self, app, logger=None):
        super().__init__(app)
        self.logger = logger or get_logger("middleware.logging")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        trace_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.trace_id = trace_id

        method = request.method
        path = request.url.path
        skip_detail = path in SKIP_DETAIL_PATHS
        start_time = time.time()

        with LogContext(trace_id=trace_id):
            log_data = {
                "direction": "inbound",
                "method": method,
                "path": path,
                "client_ip": self._get_client_ip(request),
            }
            if request.query_params and not skip_detail:
                log_data["query_params"] = self._mask_sensitive(dict(request.query_params))

            self.logger.info("API request", **log_data)

            try:
                response = await call_next(request)
            except Exception as e:
                self.logger.error(
                    "API request failed",
                    direction="inbound",
                    method=method,
                    path=path,
                    latency_ms=int((time.time() - start_time) * 1000),
                    result="error",
                    err=str(e),
                    exc_info=True
                )
                raise

            duration_ms = int((time.time() - start_time) * 1000)
            resp_log_data = {
                "direction": "inbound",
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "latency_ms": duration_ms,
                "result": "success" if response.status_code < 400 else "error",
            }

            # 只在出错时记录响应体（西语错误提示）
            if response.status_code >= 400 and not skip_detail and not isinstance(response, StreamingResponse):
                body = await self._read_response_body(response)
                if body:
                    resp_log_data["response_body"] = body[:MAX_BODY_LOG_SIZE]

            if response.status_code >= 400:
                self.logger.warning("API response error", **resp_log_data)
            else:
                self.logger.info("API response", **resp_log_data)

            response.headers["X-Trace-Id"] = trace_id
            return response

    async def _read_response_body(self, response: Response) -> Optional[str]:
        """读取响应体后重新挂回迭代器"""
        body = b""
        async for chunk in response.body_iterator:
            body += chunk

        async def body_iterator():
            yield body

        response.body_iterator = body_iterator()

        if not body:
            return None
        try:
            return json.dumps(json.loads(body), ensure_ascii=False)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return body.decode("utf-8", errors="replace")

    def _mask_sensitive(self, data: dict) -> dict:
        return {
            key: "***MASKED***" if key.lower() in SENSITIVE_FIELDS else value
            for key, value in data.items()
        }

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"
