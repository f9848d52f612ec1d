"""
Correo Argentino (MiCorreo) API 客户端
认证：POST /token（Basic）→ Bearer token；所有业务请求以 customerId 为作用域
"""
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rastuci_core.config import Settings
from rastuci_core.utils.logger import get_logger

logger = get_logger(__name__)

PRODUCTION_URL = "https://api.correoargentino.com.ar/micorreo/v1"
TEST_URL = "https://apitest.correoargentino.com.ar/micorreo/v1"


class CourierAPIError(Exception):
    """快递接口错误"""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(f"{code}: {message}")


class CourierTimeoutError(CourierAPIError):
    """请求超时：结果未知，可稍后重试"""


class CamelModel(BaseModel):
    """MiCorreo 使用 camelCase 字段"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ShipmentAddress(CamelModel):
    street_name: Optional[str] = None
    street_number: Optional[str] = None
    floor: Optional[str] = None
    apartment: Optional[str] = None
    city: Optional[str] = None
    province_code: Optional[str] = None
    postal_code: Optional[str] = None


class ShipmentSender(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    cell_phone: Optional[str] = None
    email: Optional[str] = None
    origin_address: Optional[ShipmentAddress] = None


class ShipmentRecipient(CamelModel):
    name: str
    phone: Optional[str] = None
    cell_phone: Optional[str] = None
    email: str


class ShipmentDetails(CamelModel):
    delivery_type: Literal["D", "S"]  # D = domicilio, S = sucursal
    product_type: str = "CP"
    agency: Optional[str] = None
    address: Optional[ShipmentAddress] = None
    weight: float  # 克
    declared_value: float
    height: float  # 厘米
    length: float
    width: float


class ImportShipmentRequest(CamelModel):
    """/shipping/import 请求体"""
    customer_id: str
    ext_order_id: str
    order_number: Optional[str] = None
    sender: Optional[ShipmentSender] = None
    recipient: ShipmentRecipient
    shipping: ShipmentDetails


class ImportShipmentResult(CamelModel):
    """/shipping/import 响应"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    customer_id: Optional[str] = None
    created_at: Optional[str] = None
    tracking_number: Optional[str] = None
    shipment_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def internal_id(self) -> Optional[str]:
        return self.shipment_id or self.id

    @property
    def best_tracking(self) -> Optional[str]:
        """优先官方运单号，缺失时退回内部ID"""
        return self.tracking_number or self.internal_id


class TrackingEvent(CamelModel):
    event_date: Optional[str] = None
    event_description: Optional[str] = None
    branch_name: Optional[str] = None
    branch_code: Optional[str] = None
    status: Optional[str] = None


class TrackingInfo(CamelModel):
    shipping_id: str
    status: Optional[str] = None
    events: List[TrackingEvent] = Field(default_factory=list)


class PackageDimensions(CamelModel):
    weight: int
    height: int
    width: int
    length: int


class ValidatedUser(CamelModel):
    customer_id: str
    created_at: Optional[str] = None


class CorreoArgentinoClient:
    """Correo Argentino API 客户端"""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        customer_id: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        初始化客户端

        Args:
            base_url: API 地址（生产或测试环境）
            username: MiCorreo 用户名
            password: MiCorreo 密码
            customer_id: 客户ID（可通过 validate_user 获取）
            timeout: 请求超时（秒）
            transport: 自定义传输层（测试注入）
        """
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.customer_id = customer_id

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

        self._token: Optional[str] = None
        self._token_expires: Optional[datetime] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "CorreoArgentinoClient":
        return cls(
            base_url=settings.ca_base_url,
            username=settings.ca_user,
            password=settings.ca_password,
            customer_id=settings.ca_customer_id,
            timeout=settings.ca_timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """关闭客户端连接"""
        await self.client.aclose()

    def is_authenticated(self) -> bool:
        return (
            self._token is not None
            and self._token_expires is not None
            and self._token_expires > datetime.now(timezone.utc)
        )

    async def authenticate(self) -> str:
        """获取（或复用缓存的）Bearer token"""
        if self.is_authenticated():
            return self._token

        logger.info("Authenticating with Correo Argentino", direction="outbound")
        result = await self._request(
            "POST",
            "/token",
            authenticated=False,
            auth=httpx.BasicAuth(self.username, self.password),
            error_code="AUTH_FAILED",
            error_message="No se pudo autenticar con Correo Argentino",
        )

        token = (result or {}).get("token")
        if not token:
            raise CourierAPIError("AUTH_FAILED", "No se recibió token de Correo Argentino", details=result)

        self._token = token
        self._token_expires = self._parse_expiry((result or {}).get("expires"))
        logger.info("Correo Argentino authentication successful", expires=self._token_expires.isoformat())
        return token

    @staticmethod
    def _parse_expiry(value: Optional[str]) -> datetime:
        """解析 token 过期时间，无法解析时按 12 小时处理"""
        fallback = datetime.now(timezone.utc) + timedelta(hours=12)
        if not value:
            return fallback
        try:
            expires = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return fallback
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires

    def _require_customer_id(self) -> str:
        if not self.customer_id:
            raise CourierAPIError("MISSING_CUSTOMER_ID", "CORREO_ARGENTINO_CUSTOMER_ID no configurado")
        return self.customer_id

    async def validate_user(self, email: str, password: str) -> ValidatedUser:
        """校验 MiCorreo 用户，返回 customerId"""
        result = await self._request(
            "POST",
            "/users/validate",
            data={"email": email, "password": password},
            error_code="USER_VALIDATION_FAILED",
            error_message="Error validando usuario",
        )
        user = ValidatedUser.model_validate(result)
        if not self.customer_id:
            self.customer_id = user.customer_id
        return user

    async def get_rates(
        self,
        postal_code_origin: str,
        postal_code_destination: str,
        dimensions: PackageDimensions,
        delivered_type: Optional[Literal["D", "S"]] = None
    ) -> Dict[str, Any]:
        """运费报价"""
        payload = {
            "customerId": self._require_customer_id(),
            "postalCodeOrigin": postal_code_origin,
            "postalCodeDestination": postal_code_destination,
            "dimensions": dimensions.model_dump(by_alias=True),
        }
        if delivered_type:
            payload["deliveredType"] = delivered_type

        return await self._request(
            "POST",
            "/rates",
            data=payload,
            error_code="RATES_ERROR",
            error_message="Error obteniendo cotización",
        )

    async def get_agencies(
        self,
        province_code: str,
        services: Optional[Literal["package_reception", "pickup_availability"]] = None
    ) -> List[Dict[str, Any]]:
        """查询省内网点"""
        params = {"customerId": self._require_customer_id(), "provinceCode": province_code}
        if services:
            params["services"] = services

        result = await self._request(
            "GET",
            "/agencies",
            params=params,
            error_code="AGENCIES_ERROR",
            error_message="Error obteniendo sucursales",
        )
        return result or []

    async def import_shipment(self, request: ImportShipmentRequest) -> ImportShipmentResult:
        """导入发货单"""
        shipping = request.shipping
        if shipping.delivery_type == "D":
            address = shipping.address
            if not address or not all([
                address.street_name, address.street_number, address.city,
                address.province_code, address.postal_code
            ]):
                raise CourierAPIError("MISSING_ADDRESS", "Envío a domicilio requiere dirección completa")
        elif not shipping.agency:
            raise CourierAPIError("MISSING_AGENCY", "Envío a sucursal requiere código de sucursal")

        body = request.model_dump(by_alias=True, exclude_none=True)
        address = body["shipping"].get("address")
        if address:
            # 楼层/公寓最多 3 个字符
            for key in ("floor", "apartment"):
                if address.get(key):
                    address[key] = address[key][:3]
        for key in ("weight", "height", "length", "width"):
            body["shipping"][key] = int(round(body["shipping"][key]))

        logger.info(
            "Importing shipment",
            ext_order_id=request.ext_order_id,
            delivery_type=shipping.delivery_type,
        )
        result = await self._request(
            "POST",
            "/shipping/import",
            data=body,
            error_code="IMPORT_ERROR",
            error_message="Error importando envío",
        )

        if isinstance(result, str):
            try:
                result = json.loads(result)
            except json.JSONDecodeError:
                logger.warning("Import response was a non-JSON string", response_body=result[:200])
                result = {}
        return ImportShipmentResult.model_validate(result or {})

    async def get_tracking(self, shipping_id: str) -> List[TrackingInfo]:
        """查询物流轨迹（响应可能是数组或单个对象）"""
        result = await self._request(
            "GET",
            "/shipping/tracking",
            params={"shippingId": shipping_id},
            error_code="TRACKING_ERROR",
            error_message="Error obteniendo tracking",
        )
        if isinstance(result, dict):
            result = [result]
        return [
            TrackingInfo.model_validate(item)
            for item in (result or [])
            if isinstance(item, dict) and item.get("shippingId")
        ]

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        auth: Optional[httpx.Auth] = None,
        error_code: str = "REQUEST_FAILED",
        error_message: str = "Error comunicándose con Correo Argentino",
        _retried: bool = False,
    ) -> Any:
        """
        发送 API 请求

        401 时清除 token 并重试一次；超时抛出 CourierTimeoutError
        """
        request_id = str(uuid.uuid4())
        headers = {"X-Request-Id": request_id}
        if authenticated:
            headers["Authorization"] = f"Bearer {await self.authenticate()}"

        api_start = time.perf_counter()
        logger.info(
            "Correo Argentino API request",
            direction="outbound",
            method=method,
            endpoint=endpoint,
            request_id=request_id,
        )

        try:
            response = await self.client.request(
                method,
                endpoint,
                json=data,
                params=params,
                headers=headers,
                auth=auth,
            )
            latency_ms = int((time.perf_counter() - api_start) * 1000)

            if response.status_code == 401 and authenticated and not _retried:
                logger.warning("Correo Argentino token rejected, re-authenticating", endpoint=endpoint)
                self._token = None
                self._token_expires = None
                return await self._request(
                    method, endpoint, data=data, params=params,
                    authenticated=authenticated, auth=auth,
                    error_code=error_code, error_message=error_message,
                    _retried=True,
                )

            response.raise_for_status()

            try:
                result = response.json() if response.content else None
            except ValueError:
                result = response.text

            logger.info(
                "Correo Argentino API response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                latency_ms=latency_ms,
                request_id=request_id,
                result="success",
            )
            return result

        except httpx.TimeoutException as e:
            logger.error(
                "Correo Argentino API timeout",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                request_id=request_id,
                result="unknown",
            )
            raise CourierTimeoutError(
                error_code,
                "Tiempo de espera agotado con Correo Argentino",
                details=str(e),
            ) from e
        except httpx.HTTPStatusError as e:
            try:
                details = e.response.json()
            except ValueError:
                details = e.response.text[:1000]

            logger.error(
                "Correo Argentino API error response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=e.response.status_code,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                request_id=request_id,
                response_body=str(details)[:1000],
                result="error",
            )
            raise CourierAPIError(error_code, error_message, e.response.status_code, details) from e
        except httpx.HTTPError as e:
            logger.error(
                "Correo Argentino API request failed",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
                result="error",
            )
            raise CourierAPIError(error_code, error_message, details=str(e)) from e
