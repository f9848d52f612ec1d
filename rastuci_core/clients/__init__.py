"""
外部服务客户端
"""
from .correo_argentino import (
    CorreoArgentinoClient,
    CourierAPIError,
    CourierTimeoutError,
    ImportShipmentRequest,
    ImportShipmentResult,
)
from .mercadopago import (
    MercadoPagoClient,
    GatewayAPIError,
    GatewayTimeoutError,
    GatewayPayloadError,
    GatewayPayment,
    PaymentPreference,
)
from .resend import ResendEmailClient, EmailDeliveryError

__all__ = [
    "CorreoArgentinoClient",
    "CourierAPIError",
    "CourierTimeoutError",
    "ImportShipmentRequest",
    "ImportShipmentResult",
    "MercadoPagoClient",
    "GatewayAPIError",
    "GatewayTimeoutError",
    "GatewayPayloadError",
    "GatewayPayment",
    "PaymentPreference",
    "ResendEmailClient",
    "EmailDeliveryError",
]
