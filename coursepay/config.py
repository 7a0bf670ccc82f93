"""
CoursePay - Configuration
Loads settings from environment variables
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from coursepay.models.gateway import GatewaySettings

# Load .env file
env_path = Path(__file__).parent.parent / "docker" / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()  # Try default .env in current directory


@dataclass
class Config:
    """Service configuration from environment variables"""

    # PostgreSQL
    database_url: Optional[str]

    # HTTP server
    host: str
    port: int

    # Payment processor (VNPay)
    vnpay_tmn_code: str
    vnpay_hash_secret: str
    vnpay_url: str
    vnpay_return_url: str
    vnpay_api_url: str
    vnpay_timezone: str
    vnpay_timeout: float

    # Purchasing
    payment_enabled: bool
    payment_currency: str
    payment_locale: str
    payment_expire_minutes: int
    expiry_sweep_minutes: int  # 0 disables the periodic sweep

    # Operator alerts (optional)
    telegram_bot_token: str
    admin_chat_ids: List[int]

    # Logging
    log_level: str
    log_format: str
    log_file: Optional[str]
    log_retention_days: int

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables"""
        admin_ids_str = os.getenv("ADMIN_CHAT_ID", "")
        admin_chat_ids = [int(x.strip()) for x in admin_ids_str.split(",") if x.strip()]

        return cls(
            database_url=os.getenv("DATABASE_URL"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "4000")),
            vnpay_tmn_code=os.getenv("VNPAY_TMN_CODE", ""),
            vnpay_hash_secret=os.getenv("VNPAY_HASH_SECRET", ""),
            vnpay_url=os.getenv("VNPAY_URL", "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"),
            vnpay_return_url=os.getenv("VNPAY_RETURN_URL", "http://localhost:3000/payment/vnpay-return"),
            vnpay_api_url=os.getenv(
                "VNPAY_API_URL", "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
            ),
            vnpay_timezone=os.getenv("VNPAY_TIMEZONE", "Asia/Ho_Chi_Minh"),
            vnpay_timeout=float(os.getenv("VNPAY_TIMEOUT", "30")),
            payment_enabled=os.getenv("PAYMENT_ENABLED", "false").lower() == "true",
            payment_currency=os.getenv("PAYMENT_CURRENCY", "VND"),
            payment_locale=os.getenv("PAYMENT_LOCALE", "vn"),
            payment_expire_minutes=int(os.getenv("PAYMENT_EXPIRE_MINUTES", "15")),
            expiry_sweep_minutes=int(os.getenv("EXPIRY_SWEEP_MINUTES", "5")),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
            admin_chat_ids=admin_chat_ids,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            log_file=os.getenv("LOG_FILE") or None,
            log_retention_days=int(os.getenv("LOG_RETENTION_DAYS", "30")),
        )

    def validate(self) -> None:
        """Validate required configuration"""
        if not self.database_url:
            raise ValueError("DATABASE_URL is required")
        if self.payment_enabled:
            if not self.vnpay_tmn_code:
                raise ValueError("VNPAY_TMN_CODE is required when PAYMENT_ENABLED=true")
            if not self.vnpay_hash_secret:
                raise ValueError("VNPAY_HASH_SECRET is required when PAYMENT_ENABLED=true")
        if self.payment_expire_minutes <= 0:
            raise ValueError("PAYMENT_EXPIRE_MINUTES must be positive")
        if self.expiry_sweep_minutes < 0:
            raise ValueError("EXPIRY_SWEEP_MINUTES must not be negative")

    def gateway_settings(self) -> GatewaySettings:
        """Immutable processor settings handed to the VNPay client"""
        return GatewaySettings(
            tmn_code=self.vnpay_tmn_code,
            hash_secret=self.vnpay_hash_secret,
            payment_url=self.vnpay_url,
            return_url=self.vnpay_return_url,
            api_url=self.vnpay_api_url,
            currency=self.payment_currency,
            locale=self.payment_locale,
            timezone=self.vnpay_timezone,
            timeout=self.vnpay_timeout,
            expire_minutes=self.payment_expire_minutes,
        )


# Global config instance
config = Config.from_env()
