"""
Rastuci Configuration Management
遵循约束：环境变量前缀 RS__
"""
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RS__",
        case_sensitive=False
    )

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="rastuci")
    db_user: str = Field(default="rastuci")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=20)
    db_url: Optional[str] = Field(default=None)  # 完整连接串覆盖（测试使用 sqlite+aiosqlite）

    # Redis
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: Optional[str] = Field(default=None)

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/rs/v1")
    api_title: str = Field(default="Rastuci API")
    api_version: str = Field(default="1.0.0")
    api_debug: bool = Field(default=False)
    public_base_url: str = Field(default="https://rastuci.com")
    cors_origins: str = Field(default="https://rastuci.com,http://localhost:3000")  # 逗号分隔

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # MercadoPago
    mp_access_token: str = Field(default="")
    mp_webhook_secret: Optional[str] = Field(default=None)
    mp_api_base_url: str = Field(default="https://api.mercadopago.com")
    mp_timeout: float = Field(default=10.0)
    mp_retry_max: int = Field(default=3)
    mp_retry_backoff_base: float = Field(default=0.5)
    mp_preference_expiry_minutes: int = Field(default=30)

    # Correo Argentino (MiCorreo)
    ca_base_url: str = Field(default="https://apitest.correoargentino.com.ar/micorreo/v1")
    ca_user: str = Field(default="")
    ca_password: str = Field(default="")
    ca_customer_id: Optional[str] = Field(default=None)
    ca_timeout: float = Field(default=15.0)

    # Resend 邮件
    resend_api_key: Optional[str] = Field(default=None)
    resend_api_url: str = Field(default="https://api.resend.com")
    email_from: str = Field(default="Rastuci <pedidos@rastuci.com>")
    email_timeout: float = Field(default=10.0)

    # 发件人（门店）信息
    store_name: str = Field(default="Rastuci E-commerce")
    store_phone: str = Field(default="1123456789")
    store_email: str = Field(default="ventas@rastuci.com")
    store_street: str = Field(default="Av. San Martín")
    store_street_number: str = Field(default="1234")
    store_city: str = Field(default="Don Torcuato")
    store_province_code: str = Field(default="B")
    store_postal_code: str = Field(default="1611")

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v):
        """确保 API 前缀符合规范"""
        if not v.startswith("/api/rs/"):
            raise ValueError("API prefix must start with /api/rs/")
        return v

    @field_validator("store_province_code")
    @classmethod
    def validate_store_province_code(cls, v):
        """省份代码为单个大写字母"""
        if len(v) != 1 or not v.isalpha():
            raise ValueError("Store province code must be a single letter")
        return v.upper()

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def sync_database_url(self) -> str:
        """构建同步数据库连接字符串（用于 Alembic）"""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def redis_url(self) -> str:
        """构建 Redis 连接字符串"""
        password = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{password}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
