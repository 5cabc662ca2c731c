"""
Application configuration. Loads from environment variables.
Secrets and sensitive config must never be hardcoded.
"""

import os

from dotenv import load_dotenv

load_dotenv()
from functools import lru_cache
from typing import Optional

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached settings instance."""
    return Settings()


class Settings:
    """Application settings loaded from environment."""

    # App
    app_name: str = "PerfPulse"
    debug: bool = False

    # Database (postgresql+psycopg for psycopg3; sqlite:// is accepted for local runs and tests)
    database_url: str = "postgresql+psycopg://localhost:5432/perfpulse_dev"
    db_connect_timeout: int = 10  # seconds

    # Security
    secret_key: str = ""
    internal_job_token: str = ""  # Required for /internal/* endpoints

    # Audit provider (PageSpeed Insights)
    pagespeed_api_key: Optional[str] = None
    pagespeed_api_url: str = PAGESPEED_API_URL
    audit_timeout: float = 60.0  # seconds; a hung provider call surfaces as a transport error

    # Job retry policy
    job_max_attempts: int = 3
    retry_base_delay: float = 30.0  # seconds, multiplied by the attempt number
    retry_max_delay: float = 600.0
    job_lease_seconds: Optional[float] = None  # defaults to audit_timeout + 60

    # Worker
    worker_poll_interval: float = 5.0
    worker_batch_size: int = 10
    worker_concurrency: int = 4

    def __init__(self) -> None:
        self.app_name = os.getenv("APP_NAME", self.app_name)
        self.debug = os.getenv("DEBUG", "false").lower() == "true"

        default_user = os.getenv("PGUSER") or os.getenv("USER") or "postgres"
        default_url = (
            f"postgresql+psycopg://{default_user}:"
            f"{os.getenv('PGPASSWORD', '')}@"
            f"{os.getenv('PGHOST', 'localhost')}:"
            f"{os.getenv('PGPORT', '5432')}/"
            f"{os.getenv('PGDATABASE', 'perfpulse_dev')}"
        )
        raw_url = os.getenv("DATABASE_URL", default_url)
        # Ensure psycopg3 driver if URL uses generic postgresql://
        if raw_url.startswith("postgresql://") and not raw_url.startswith("postgresql+psycopg"):
            raw_url = raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
        self.database_url = raw_url
        self.db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", str(self.db_connect_timeout)))

        self.secret_key = os.getenv("SECRET_KEY", "")
        self.internal_job_token = os.getenv("INTERNAL_JOB_TOKEN", "")

        self.pagespeed_api_key = os.getenv("PAGESPEED_API_KEY") or None
        self.pagespeed_api_url = os.getenv("PAGESPEED_API_URL", self.pagespeed_api_url)
        self.audit_timeout = float(os.getenv("AUDIT_TIMEOUT", str(self.audit_timeout)))

        self.job_max_attempts = int(os.getenv("JOB_MAX_ATTEMPTS", str(self.job_max_attempts)))
        self.retry_base_delay = float(os.getenv("RETRY_BASE_DELAY", str(self.retry_base_delay)))
        self.retry_max_delay = float(os.getenv("RETRY_MAX_DELAY", str(self.retry_max_delay)))
        lease = os.getenv("JOB_LEASE_SECONDS")
        self.job_lease_seconds = float(lease) if lease else self.audit_timeout + 60.0

        self.worker_poll_interval = float(
            os.getenv("WORKER_POLL_INTERVAL", str(self.worker_poll_interval))
        )
        self.worker_batch_size = int(os.getenv("WORKER_BATCH_SIZE", str(self.worker_batch_size)))
        self.worker_concurrency = int(
            os.getenv("WORKER_CONCURRENCY", str(self.worker_concurrency))
        )
