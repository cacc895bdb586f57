from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import get_logger

TIER_MATCH_POLICIES = ("floor", "exact")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field(..., alias="DATABASE_URL")
    admin_token: str = Field("", alias="ADMIN_TOKEN")

    # Hosted auth provider (Supabase GoTrue). User routes resolve bearer tokens here.
    supabase_url: str = Field("", alias="SUPABASE_URL")
    supabase_anon_key: str = Field("", alias="SUPABASE_ANON_KEY")
    auth_timeout_seconds: float = Field(default=10.0, alias="AUTH_TIMEOUT_SECONDS")

    telegram_bot_token: str = Field("", alias="TELEGRAM_BOT_TOKEN")
    telegram_admin_chat_id: str = Field("", alias="TELEGRAM_ADMIN_CHAT_ID")

    # floor: highest tier key <= correct count; exact: only an exact key is a hit.
    tier_match_policy: str = Field("floor", alias="TIER_MATCH_POLICY")
    rollover_credit_amount: int = Field(default=1, alias="ROLLOVER_CREDIT_AMOUNT")
    default_currency: str = Field("KES", alias="DEFAULT_CURRENCY")
    default_prize_pool: Optional[Decimal] = Field(default=None, alias="DEFAULT_PRIZE_POOL")

    ingest_chunk_size: int = Field(default=50, alias="INGEST_CHUNK_SIZE")
    ingest_max_fixtures: int = Field(default=60, alias="INGEST_MAX_FIXTURES")
    settling_queue_limit: int = Field(default=50, alias="SETTLING_QUEUE_LIMIT")

    cascade_repair_max_attempts: int = Field(default=5, alias="CASCADE_REPAIR_MAX_ATTEMPTS")
    cascade_repair_batch: int = Field(default=20, alias="CASCADE_REPAIR_BATCH")

    job_repair_cascades_cron: str = Field("*/15 * * * *", alias="JOB_REPAIR_CASCADES_CRON")
    job_maintenance_cron: str = Field("30 3 * * *", alias="JOB_MAINTENANCE_CRON")
    job_runs_retention_days: int = Field(default=90, alias="JOB_RUNS_RETENTION_DAYS")

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    allow_web_scheduler: bool = Field(default=False, alias="ALLOW_WEB_SCHEDULER")

    run_now_min_interval_seconds: int = Field(default=3, alias="RUN_NOW_MIN_INTERVAL_SECONDS")

    @field_validator("database_url")
    @classmethod
    def asyncpg_driver(cls, v: str) -> str:
        # Hosted providers hand out postgres:// DSNs; the engine needs the asyncpg driver.
        for prefix in ("postgres://", "postgresql://"):
            if v.startswith(prefix):
                return "postgresql+asyncpg://" + v[len(prefix):]
        return v

    @model_validator(mode="after")
    def validate_tier_policy(self):
        policy = (self.tier_match_policy or "").strip().lower()
        if policy not in TIER_MATCH_POLICIES:
            logger = get_logger("settings")
            logger.warning("TIER_MATCH_POLICY=%r is not supported; falling back to floor", self.tier_match_policy)
            policy = "floor"
        self.tier_match_policy = policy
        return self

    @property
    def is_prod(self) -> bool:
        return (self.app_env or "").strip().lower() in {"prod", "production"}

    @property
    def auth_configured(self) -> bool:
        return bool((self.supabase_url or "").strip() and (self.supabase_anon_key or "").strip())

    @property
    def telegram_admin_chat(self) -> int | None:
        raw = (self.telegram_admin_chat_id or "").strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            return None


default_settings = Settings()
settings = default_settings
