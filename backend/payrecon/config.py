"""
payrecon Configuration Module

Loads environment variables for gateway credentials, retry policy, timeouts
and persistence.
"""
from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - The gateway API key doubles as the shared signing secret
    - Gateway timeouts are soft: the caller stops waiting, the request may
      still land on the gateway side
    - Engine timeouts wrap whole operations and are independent of each other
    """

    # Gateway credentials
    gateway_login: str = "merchant_login_change_me"
    gateway_api_key: str = "gateway_api_key_change_me"

    # Gateway endpoints
    gateway_payment_url: str = "https://allpay.to/app/?show=getpayment&mode=api8"
    gateway_status_url: str = "https://allpay.to/app/?show=paymentstatus&mode=api8"
    gateway_refund_url: str = "https://allpay.to/app/?show=refund&mode=api8"
    gateway_health_url: str = "https://allpay.to/"
    gateway_user_agent: str = "payrecon/1.0"
    order_id_prefix: str = "SB0"

    # Retry policy (linear backoff: delay before attempt k is base * k)
    gateway_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    rate_limit_delay_seconds: float = 0.1

    # Soft timeouts
    gateway_timeout_seconds: float = 8.0
    health_check_timeout_seconds: float = 5.0
    create_payment_timeout_seconds: float = 10.0
    status_check_timeout_seconds: float = 10.0
    history_timeout_seconds: float = 10.0
    webhook_timeout_seconds: float = 10.0

    # Business rules
    max_payment_amount: Decimal = Decimal("999999.99")
    default_payment_expiry_seconds: int = 3600
    history_default_limit: int = 50
    history_max_limit: int = 100

    # Callback URL defaults
    backend_url: str = "http://localhost:2894"
    frontend_url: str = "http://localhost:5173"

    # Database
    database_path: str = "./payrecon.db"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
