from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="animate", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; standalone dev servers run without.
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Google sign-in
    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")

    # Razorpay
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")
    payments_currency: str = Field(default="USD", alias="PAYMENTS_CURRENCY")

    # Video generation provider
    generation_api_url: str = Field(default="https://api.runware.ai/v1", alias="GENERATION_API_URL")
    generation_api_key: str = Field(default="", alias="GENERATION_API_KEY")
    generation_timeout_seconds: float = Field(default=30.0, alias="GENERATION_TIMEOUT_SECONDS")
    generation_max_retries: int = Field(default=3, alias="GENERATION_MAX_RETRIES")
    generation_retry_base_delay: float = Field(default=1.0, alias="GENERATION_RETRY_BASE_DELAY")
    generation_retry_max_delay: float = Field(default=30.0, alias="GENERATION_RETRY_MAX_DELAY")

    # Status long-poll
    status_poll_max_attempts: int = Field(default=6, alias="STATUS_POLL_MAX_ATTEMPTS")
    status_poll_interval_seconds: float = Field(default=5.0, alias="STATUS_POLL_INTERVAL_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Credits
    signup_bonus: int = 150
    daily_checkin_bonus: int = 15
    checkin_interval_hours: int = 24
    referral_signup_bonus: int = 30  # referrer
    referral_friend_bonus: int = 50  # new user
    referral_first_video_bonus: int = 70  # referrer, once per referee
    video_creation_cost: int = 60

    # Ledger conflict retries (transient transaction errors)
    ledger_conflict_retries: int = Field(default=3, alias="LEDGER_CONFLICT_RETRIES")

    # Video generation limits
    prompt_max_length: int = 300
    video_rate_limit_per_hour: int = Field(default=5, alias="VIDEO_RATE_LIMIT_PER_HOUR")


@lru_cache
def get_settings() -> Settings:
    return Settings()
