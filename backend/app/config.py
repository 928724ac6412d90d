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
        self.env = os.getenv("APP_ENV", "local")
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.db_url = os.getenv("DATABASE_URL", "postgresql://localhost/pos_payments")
        # Pool sizing defaults are conservative for local/dev.
        self.db_pool_min_size = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max_size = _env_int("DB_POOL_MAX_SIZE", 10)
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )

        # Payment processor.
        self.processor_api_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
        self.webhook_secret = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
        self.connect_webhook_secret = (os.getenv("STRIPE_CONNECT_WEBHOOK_SECRET") or "").strip()
        self.webhook_tolerance_seconds = _env_int("WEBHOOK_TOLERANCE_SECONDS", 300)
        self.account_sync_ttl_seconds = _env_int("ACCOUNT_SYNC_TTL_SECONDS", 300)
        # Return/refresh target for processor-hosted onboarding flows.
        self.dashboard_url = (os.getenv("DASHBOARD_URL") or "http://localhost:3000").rstrip("/")

        # Background jobs.
        self.job_max_attempts = _env_int("JOB_MAX_ATTEMPTS", 3)
        self.job_backoff_seconds = _env_int("JOB_BACKOFF_SECONDS", 2)
        self.job_max_backoff_seconds = _env_int("JOB_MAX_BACKOFF_SECONDS", 300)
        self.job_visibility_timeout_seconds = _env_int("JOB_VISIBILITY_TIMEOUT_SECONDS", 600)
        self.worker_concurrency = _env_int("WORKER_CONCURRENCY", 5)


settings = Settings()
