"""
Configuration management for the storefront checkout service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront")
    REGION: str = os.getenv("REGION", "ap-south-1")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USE_TLS: bool = _env_bool("REDIS_USE_TLS", "false")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    # Document store settings
    STORE_KEY_PREFIX: str = os.getenv("STORE_KEY_PREFIX", "store")

    # Cart / checkout settings
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "99"))
    TOTALS_CACHE_TTL_SECONDS: int = int(os.getenv("TOTALS_CACHE_TTL_SECONDS", str(30 * 60)))  # 30 minutes
    CHECKOUT_SESSION_TTL_SECONDS: int = int(os.getenv("CHECKOUT_SESSION_TTL_SECONDS", str(30 * 60)))

    # Pricing policy (not user-configurable)
    TAX_RATE: Decimal = Decimal("0.18")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("999")
    SHIPPING_FEE: Decimal = Decimal("40")

    # Payment gateway settings
    RAZORPAY_KEY_ID: str = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET: Optional[str] = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_BASE_URL: str = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com")
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "INR")
    GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

    @classmethod
    def _read_secret(cls, secret_name: str) -> dict:
        client = boto3.client("secretsmanager", region_name=cls.REGION)
        response = client.get_secret_value(SecretId=secret_name)
        return json.loads(response["SecretString"])

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return

        try:
            secret_data = cls._read_secret(secret_name)
            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except Exception as e:
            logger.warning(f"Could not load Redis secrets from Secrets Manager: {e}")

    @classmethod
    def load_gateway_secrets(cls) -> None:
        """Load Razorpay key pair from AWS Secrets Manager"""
        if cls.RAZORPAY_KEY_SECRET:
            return

        secret_name = os.getenv("RAZORPAY_SECRET_NAME")
        if not secret_name:
            return

        try:
            secret_data = cls._read_secret(secret_name)
            cls.RAZORPAY_KEY_SECRET = secret_data.get("key_secret")
            if "key_id" in secret_data:
                cls.RAZORPAY_KEY_ID = secret_data["key_id"]
        except Exception as e:
            logger.warning(f"Could not load gateway secrets from Secrets Manager: {e}")

    @classmethod
    def load_secrets(cls) -> None:
        cls.load_redis_secrets()
        cls.load_gateway_secrets()


# Load secrets at module import
Config.load_secrets()
