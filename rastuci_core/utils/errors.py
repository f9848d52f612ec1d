"""
Rastuci 错误处理系统
遵循 RFC7807 Problem Details 标准
"""
from typing import Any, Dict, Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Conflict",
                "status": 409,
                "detail": "Stock insuficiente para Remera Básica. Disponible: 1, Solicitado: 2",
                "code": "INSUFFICIENT_STOCK"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class RastuciException(Exception):
    """Rastuci 基础异常类"""

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        """转换为 JSON 响应"""
        instance = str(request.url) if request else None
        problem = self.to_problem_detail(instance)

        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": problem.model_dump(exclude_none=True)
            }
        )


# 预定义错误类
class BadRequestError(RastuciException):
    """400 错误请求"""
    def __init__(self, code: str, detail: str):
        super().__init__(
            status=400,
            code=code,
            title="Bad Request",
            detail=detail
        )


class NotFoundError(RastuciException):
    """404 未找到"""
    def __init__(self, code: str, resource: str, detail: Optional[str] = None):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=detail or f"{resource} not found"
        )


class ConflictError(RastuciException):
    """409 冲突"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=409,
            code=code,
            title="Conflict",
            detail=detail,
            **kwargs
        )


class InsufficientStockError(ConflictError):
    """库存不足（条件扣减未命中）"""
    def __init__(
        self,
        product_id: str,
        requested: int,
        available: Optional[int] = None,
        variant_id: Optional[str] = None,
        name: Optional[str] = None
    ):
        label = name or variant_id or product_id
        if available is None:
            detail = f"Stock insuficiente para {label}. Solicitado: {requested}"
        else:
            detail = f"Stock insuficiente para {label}. Disponible: {available}, Solicitado: {requested}"
        super().__init__(
            code="INSUFFICIENT_STOCK",
            detail=detail,
            product_id=product_id,
            variant_id=variant_id,
            requested=requested,
            available=available
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class ValidationError(RastuciException):
    """422 验证失败"""
    def __init__(self, code: str, detail: str):
        super().__init__(
            status=422,
            code=code,
            title="Validation Failed",
            detail=detail
        )


class InternalServerError(RastuciException):
    """500 内部错误"""
    def __init__(self, code: str = "INTERNAL_ERROR", detail: str = "An internal error occurred"):
        super().__init__(
            status=500,
            code=code,
            title="Internal Server Error",
            detail=detail
        )


class ServiceUnavailableError(RastuciException):
    """503 服务不可用"""
    def __init__(self, code: str = "SERVICE_UNAVAILABLE", detail: str = "Service temporarily unavailable", **kwargs):
        super().__init__(
            status=503,
            code=code,
            title="Service Unavailable",
            detail=detail,
            **kwargs
        )


def problem_payload(exc: RastuciException) -> Dict[str, Any]:
    """异常的简化字典形式（用于结果记录）"""
    return {"code": exc.code, "detail": exc.detail, "status": exc.status}
