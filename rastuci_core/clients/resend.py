"""
Resend 邮件客户端
"""
import time
from typing import Any, Dict, List, Optional

import httpx

from rastuci_core.config import Settings
from rastuci_core.utils.logger import get_logger

logger = get_logger(__name__)


class EmailDeliveryError(Exception):
    """邮件发送失败"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ResendEmailClient:
    """POST /emails"""

    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.sender = sender
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key or ''}",
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
    ) -> "ResendEmailClient":
        return cls(
            api_key=settings.resend_api_key,
            sender=settings.email_from,
            base_url=settings.resend_api_url,
            timeout=settings.email_timeout,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def close(self):
        await self.client.aclose()

    async def send(
        self,
        to: List[str],
        subject: str,
        html: str,
        text: Optional[str] = None
    ) -> Dict[str, Any]:
        """发送邮件，返回 Resend 响应（含 id）"""
        body = {"from": self.sender, "to": to, "subject": subject, "html": html}
        if text:
            body["text"] = text

        api_start = time.perf_counter()
        try:
            response = await self.client.post("/emails", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Resend API error response",
                direction="outbound",
                endpoint="/emails",
                status_code=e.response.status_code,
                latency_ms=int((time.perf_counter() - api_start) * 1000),
                response_body=e.response.text[:500],
                result="error",
            )
            raise EmailDeliveryError(
                f"Resend rejected email: {e.response.status_code}",
                e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "Resend API request failed",
                direction="outbound",
                endpoint="/emails",
                error=str(e),
                error_type=type(e).__name__,
                result="error",
            )
            raise EmailDeliveryError(f"Resend request failed: {e}") from e

        logger.info(
            "Resend API response",
            direction="outbound",
            endpoint="/emails",
            status_code=response.status_code,
            latency_ms=int((time.perf_counter() - api_start) * 1000),
            result="success",
        )
        return response.json() if response.content else {}
