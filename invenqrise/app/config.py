import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')

        # APP_DATABASE_URL is the RLS-restricted role; DATABASE_URL_ADMIN bypasses RLS.
        fallback = os.getenv("DATABASE_URL") or "postgresql://localhost/invenqrise"
        self.db_url = os.getenv("APP_DATABASE_URL") or fallback
        self.db_admin_url = os.getenv("DATABASE_URL_ADMIN") or fallback
        self.db_pool_min = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max = _env_int("DB_POOL_MAX_SIZE", 10)
        self.db_admin_pool_min = _env_int("DB_ADMIN_POOL_MIN_SIZE", 1)
        self.db_admin_pool_max = _env_int("DB_ADMIN_POOL_MAX_SIZE", 5)

        # Comma-separated list of allowed CORS origins for the dashboard.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:9002"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Stock rules shared by billing, inventory and the dashboard.
        self.low_stock_threshold = _env_int("LOW_STOCK_THRESHOLD", 20)
        self.expiry_alert_days = _env_int("EXPIRY_ALERT_DAYS", 5)
        self.expiry_warning_days = _env_int("EXPIRY_WARNING_DAYS", 7)

        self.otp_ttl_minutes = _env_int("OTP_TTL_MINUTES", 10)

        self.resend_api_key = (os.getenv("RESEND_API_KEY") or "").strip()
        self.resend_base_url = (os.getenv("RESEND_BASE_URL") or "https://api.resend.com").strip().rstrip("/")
        self.resend_from_email = (os.getenv("RESEND_FROM_EMAIL") or "onboarding@resend.dev").strip()
        # Resend sandbox accounts can only deliver to the account owner.
        self.resend_sandbox_recipient = (os.getenv("RESEND_SANDBOX_RECIPIENT") or "").strip()

        self.brand_name = os.getenv("BRAND_NAME", "InvenQrise").strip() or "InvenQrise"
        self.currency_symbol = os.getenv("CURRENCY_SYMBOL", "₹")

    @property
    def is_dev(self) -> bool:
        return self.env in {"local", "dev"}


settings = Settings()
