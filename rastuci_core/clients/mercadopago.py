"""
MercadoPago API 客户端
- 查询支付详情（回调对账使用，带超时与有限次重试）
- 创建支付偏好（Checkout Pro）
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from rastuci_core.config import Settings
from rastuci_core.utils.logger import get_logger

logger = get_logger(__name__)


class GatewayAPIError(Exception):
    """支付网关接口错误"""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class GatewayTimeoutError(GatewayAPIError):
    """网关超时：支付结果未知"""


class GatewayPayloadError(GatewayAPIError):
    """网关返回的数据不符合预期结构"""


class PaymentMetadata(BaseModel):
    """创建偏好时写入的元数据（网关回传时可能附加其它字段）"""
    model_config = ConfigDict(extra="ignore")

    order_id: Optional[str] = None


class GatewayPayment(BaseModel):
    """GET /v1/payments/{id} 响应中用到的字段"""
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)
    transaction_amount: Optional[Decimal] = None
    currency_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    date_approved: Optional[datetime] = None

    @property
    def order_references(self) -> List[str]:
        """候选订单ID：external_reference 在前，metadata.order_id 在后（去重）"""
        references: List[str] = []
        for reference in (self.external_reference, self.metadata.order_id):
            if reference and reference not in references:
                references.append(reference)
        return references


class PreferenceItem(BaseModel):
    id: str
    title: str
    quantity: int
    unit_price: float
    currency_id: str = "ARS"


class PaymentPreference(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    init_point: str
    sandbox_init_point: Optional[str] = None


def parse_gateway_payment(payload: Any) -> GatewayPayment:
    """严格解析支付详情，结构不符时抛出 GatewayPayloadError"""
    if not isinstance(payload, dict):
        raise GatewayPayloadError("Payment payload is not an object", details=payload)
    if payload.get("metadata") is None:
        payload = {**payload, "metadata": {}}
    try:
        return GatewayPayment.model_validate(payload)
    except PydanticValidationError as e:
        raise GatewayPayloadError("Invalid payment payload", details=e.errors()) from e


class MercadoPagoClient:
    """MercadoPago REST 客户端"""

    # 可重试的 HTTP 状态码
    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        public_base_url: str = "https://rastuci.com",
        notification_path: str = "/api/rs/v1/webhooks/mercadopago",
        timeout: float = 10.0,
        retry_max: int = 3,
        retry_backoff_base: float = 0.5,
        preference_expiry_minutes: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.public_base_url = public_base_url.rstrip("/")
        self.notification_url = f"{self.public_base_url}{notification_path}"
        self.retry_max = max(1, retry_max)
        self.retry_backoff_base = retry_backoff_base
        self.preference_expiry_minutes = preference_expiry_minutes

        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "MercadoPagoClient":
        return cls(
            access_token=settings.mp_access_token,
            base_url=settings.mp_api_base_url,
            public_base_url=settings.public_base_url,
            notification_path=f"{settings.api_prefix}/webhooks/mercadopago",
            timeout=settings.mp_timeout,
            retry_max=settings.mp_retry_max,
            retry_backoff_base=settings.mp_retry_backoff_base,
            preference_expiry_minutes=settings.mp_preference_expiry_minutes,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """
        查询支付详情

        超时、5xx 与 429 按指数退避重试，最多 retry_max 次；
        全部超时抛出 GatewayTimeoutError（结果未知）
        """
        last_error: Optional[GatewayAPIError] = None

        for attempt in range(1, self.retry_max + 1):
            try:
                payload = await self._request("GET", f"/v1/payments/{payment_id}")
                return parse_gateway_payment(payload)
            except GatewayPayloadError:
                raise
            except GatewayTimeoutError as e:
                last_error = e
            except GatewayAPIError as e:
                if e.status_code is not None and e.status_code not in self.RETRYABLE_STATUS:
                    raise
                last_error = e

            if attempt < self.retry_max:
                delay = self.retry_backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "MercadoPago payment lookup retrying",
                    payment_id=payment_id,
                    attempt=attempt,
                    delay=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        raise last_error

    async def create_preference(
        self,
        order_id: str,
        items: List[PreferenceItem],
        payer_email: Optional[str] = None,
        payer_name: Optional[str] = None,
        shipping_cost: Optional[Decimal] = None
    ) -> PaymentPreference:
        """创建 Checkout Pro 支付偏好"""
        now = datetime.now(timezone.utc)
        expires = now + timedelta(minutes=self.preference_expiry_minutes)

        body: Dict[str, Any] = {
            "items": [item.model_dump() for item in items],
            "external_reference": order_id,
            "metadata": {"order_id": order_id},
            "back_urls": {
                "success": f"{self.public_base_url}/checkout/success?order_id={order_id}",
                "failure": f"{self.public_base_url}/checkout/failure?order_id={order_id}",
                "pending": f"{self.public_base_url}/checkout/pending?order_id={order_id}",
            },
            "notification_url": self.notification_url,
            "auto_return": "approved",
            "statement_descriptor": "RASTUCI",
            "expires": True,
            "expiration_date_from": now.isoformat(timespec="milliseconds"),
            "expiration_date_to": expires.isoformat(timespec="milliseconds"),
        }
        if payer_email:
            body["payer"] = {"email": payer_email, "name": payer_name or ""}
        if shipping_cost:
            body["shipments"] = {"cost": float(shipping_cost), "mode": "not_specified"}

        payload = await self._request("POST", "/checkout/preferences", data=body)
        try:
            return PaymentPreference.model_validate(payload)
        except PydanticValidationError as e:
            raise GatewayPayloadError("Invalid preference payload", details=e.errors()) from e

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Any:
        """发送 API 请求"""
        request_id = str(uuid.uuid4())
        headers = {"X-Idempotency-Key": request_id} if method == "POST" else {}

        api_start = time.perf_counter()
        logger.info(
            "MercadoPago API request",
            direction="outbound",
            method=method,
            endpoint=endpoint,
            request_id=request_id,
        )

        try:
            response = await self.client.request(method, endpoint, json=data, headers=headers)
            response.raise_for_status()

            try:
                result = response.json()
            except ValueError as e:
                raise GatewayPayloadError("MercadoPago returned a non-JSON response", response.status_code) from e

            logger.info(
                "MercadoPago API response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                request_id=request_id,
                result="success",
            )
            return result

        except httpx.TimeoutException as e:
            logger.error(
                "MercadoPago API timeout",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                request_id=request_id,
                result="unknown",
            )
            raise GatewayTimeoutError(f"MercadoPago request timed out: {endpoint}", details=str(e)) from e
        except httpx.HTTPStatusError as e:
            try:
                details = e.response.json()
            except ValueError:
                details = e.response.text[:1000]

            logger.error(
                "MercadoPago API error response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=e.response.status_code,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                request_id=request_id,
                response_body=str(details)[:1000],
                result="error",
            )
            raise GatewayAPIError(
                f"MercadoPago API error: {e.response.status_code}",
                e.response.status_code,
                details
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "MercadoPago API request failed",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
                result="error",
            )
            raise GatewayAPIError(f"MercadoPago request failed: {e}", details=str(e)) from e
