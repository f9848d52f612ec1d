"""
API 响应模型
"""
from typing import Any, Dict, Optional, Generic, TypeVar
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rastuci_core.services.base import ServiceResult

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""
    ok: bool = Field(description="操作是否成功")
    data: Optional[T] = Field(default=None, description="响应数据")
    error: Optional[Dict[str, Any]] = Field(default=None, description="错误信息（RFC7807 Problem Details）")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="元数据")

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        """创建成功响应"""
        return cls(ok=True, data=data, metadata=metadata)

    @classmethod
    def from_result(cls, result: ServiceResult, status: int = 400) -> "ApiResponse":
        """把服务结果转换为响应（失败时附带 Problem Details）"""
        if result.success:
            return cls.success(result.data, result.metadata)
        return cls(
            ok=False,
            error={
                "type": "about:blank",
                "title": "Operation Failed",
                "status": status,
                "detail": result.error,
                "code": result.error_code,
            },
            metadata=result.metadata,
        )


class StatusUpdateRequest(BaseModel):
    """后台状态变更请求"""
    status: str = Field(description="目标订单状态")


class CouponValidationResponse(BaseModel):
    """优惠券校验结果"""
    code: str
    type: str
    value: str
    discount: str


def failure_response(result: ServiceResult, status: int = 502) -> JSONResponse:
    """失败的服务结果 → 带状态码的 JSON 响应"""
    return JSONResponse(
        status_code=status,
        content=jsonable_encoder(ApiResponse.from_result(result, status).model_dump(exclude_none=True)),
    )
