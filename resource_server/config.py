from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    api_prefix: str = "/api"
    legacy_api_prefix: str = "/api/v1"
    admin_prefix: str = "/admin"
    db_url: str = os.getenv("PORTFOLIO_DB_URL", "sqlite:///data/portfolio.db")
    s3_bucket: str = os.getenv("PORTFOLIO_S3_BUCKET", "portfolio-assets")
    s3_endpoint_url: str | None = os.getenv("PORTFOLIO_S3_ENDPOINT_URL") or None
    s3_region: str = os.getenv("PORTFOLIO_S3_REGION", "us-east-1")
    sign_ttl_s: int = int(os.getenv("PORTFOLIO_SIGN_TTL_S", 60 * 60))
    # A URL within this window of its expiry is treated as stale.
    refresh_buffer_s: int = int(os.getenv("PORTFOLIO_REFRESH_BUFFER_S", 5 * 60))
    sweep_interval_s: float = float(os.getenv("PORTFOLIO_SWEEP_INTERVAL_S", 5 * 60))
    sweep_batch_size: int = int(os.getenv("PORTFOLIO_SWEEP_BATCH_SIZE", 100))
    refresh_join_timeout_s: float = float(os.getenv("PORTFOLIO_REFRESH_JOIN_TIMEOUT_S", 30))
    scheduler_enabled: bool = _env_bool("PORTFOLIO_SCHEDULER_ENABLED", True)
    jwt_secret: str = os.getenv("PORTFOLIO_JWT_SECRET", "dev-secret-change-me")
    jwt_algorithm: str = os.getenv("PORTFOLIO_JWT_ALGORITHM", "HS256")
    max_upload_bytes: int = int(os.getenv("PORTFOLIO_MAX_UPLOAD_BYTES", 50 * 1024 * 1024))
    cors_origins: tuple[str, ...] = tuple(
        o.strip()
        for o in os.getenv(
            "PORTFOLIO_CORS_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000"
        ).split(",")
        if o.strip()
    )


settings = Settings()
