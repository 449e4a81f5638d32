"""
Creator Studio — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Services never call os.getenv() themselves. They take explicit
constructor arguments and fall back to the values on `cfg`.

Usage:
    from creatorstudio.core.config import cfg

    print(cfg.DB_PATH)
    print(cfg.IMAGE_TIMEOUT_SECONDS)
─────────────────────────────────────────────────────────────────
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ── App ───────────────────────────────────
    ENV:             str = os.getenv("ENV", "development")   # "production" in prod
    DB_PATH:         str = os.getenv("DB_PATH", "creatorstudio.db")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    FRONTEND_URL:    str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    HOST:            str = os.getenv("HOST", "0.0.0.0")
    PORT:            int = int(os.getenv("PORT", "8000"))

    # ── Security ──────────────────────────────
    JWT_SECRET:     str = os.getenv("JWT_SECRET", "dev-secret-change-in-prod!")
    ALGORITHM:      str = "HS256"
    SESSION_DAYS:   int = 30
    WEBHOOK_SECRET: str = os.getenv("WEBHOOK_SECRET", "")

    # ── Providers ─────────────────────────────
    RUNPOD_API_KEY:        str  = os.getenv("RUNPOD_API_KEY", "")
    RUNPOD_ENDPOINT_ID:    str  = os.getenv("RUNPOD_ENDPOINT_ID", "")
    RUNWARE_API_KEY:       str  = os.getenv("RUNWARE_API_KEY", "")
    FAL_KEY:               str  = os.getenv("FAL_KEY", "")
    WAVESPEED_API_KEY:     str  = os.getenv("WAVESPEED_API_KEY", "")
    WAVESPEED_USE_WEBHOOK: bool = _flag("WAVESPEED_USE_WEBHOOK")
    PROVIDER_TIMEOUT:      float = float(os.getenv("PROVIDER_TIMEOUT", "30"))

    # ── Storage (S3) ──────────────────────────
    AWS_ACCESS_KEY_ID:     str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_S3_BUCKET:         str = os.getenv("AWS_S3_BUCKET", "creatorstudio-media")
    AWS_REGION:            str = os.getenv("AWS_REGION", "us-east-1")
    AWS_CDN_URL:           str = os.getenv("AWS_CDN_URL", "").rstrip("/")

    # ── Push (device notifications) ───────────
    PUSH_ENDPOINT: str   = os.getenv("PUSH_ENDPOINT", "")
    PUSH_API_KEY:  str   = os.getenv("PUSH_API_KEY", "")
    PUSH_TIMEOUT:  float = float(os.getenv("PUSH_TIMEOUT", "10"))

    # ── Catalog ───────────────────────────────
    CATALOG_PATH: str = os.getenv("CATALOG_PATH", "")

    # ── Jobs / Orchestration ──────────────────
    IMAGE_TIMEOUT_SECONDS:      int   = int(os.getenv("IMAGE_TIMEOUT_SECONDS", "300"))    # 5 min
    VIDEO_TIMEOUT_SECONDS:      int   = int(os.getenv("VIDEO_TIMEOUT_SECONDS", "600"))    # 10 min
    REAPER_INTERVAL_SECONDS:    float = float(os.getenv("REAPER_INTERVAL_SECONDS", "60"))
    SETTLED_RETENTION_DAYS:     int   = int(os.getenv("SETTLED_RETENTION_DAYS", "7"))
    POLL_INTERVAL:              float = float(os.getenv("POLL_INTERVAL", "2.0"))
    POLL_MAX_INTERVAL:          float = float(os.getenv("POLL_MAX_INTERVAL", "30.0"))
    MAX_SUBMIT_ATTEMPTS:        int   = int(os.getenv("MAX_SUBMIT_ATTEMPTS", "3"))
    FEED_RECONNECT_BASE:        float = float(os.getenv("FEED_RECONNECT_BASE", "1.0"))
    FEED_RECONNECT_MAX:         float = float(os.getenv("FEED_RECONNECT_MAX", "30.0"))
    NOTIFICATION_GRACE_SECONDS: float = float(os.getenv("NOTIFICATION_GRACE_SECONDS", "5"))

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def is_dev(self) -> bool:
        return self.ENV == "development"

    @property
    def webhooks_ready(self) -> bool:
        return bool(self.WEBHOOK_SECRET and self.PUBLIC_BASE_URL)

    @property
    def push_ready(self) -> bool:
        return bool(self.PUSH_ENDPOINT)

    @property
    def s3_ready(self) -> bool:
        return bool(self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY and self.AWS_S3_BUCKET)

    def __repr__(self):
        return (
            f"<Config env={self.ENV} "
            f"webhooks={'✓' if self.webhooks_ready else '✗'} "
            f"s3={'✓' if self.s3_ready else '✗'} "
            f"push={'✓' if self.push_ready else '✗'} "
            f"runpod={'✓' if self.RUNPOD_API_KEY else '✗'} "
            f"runware={'✓' if self.RUNWARE_API_KEY else '✗'} "
            f"fal={'✓' if self.FAL_KEY else '✗'} "
            f"wavespeed={'✓' if self.WAVESPEED_API_KEY else '✗'}>"
        )


# Single global instance, import this everywhere
cfg = Config()
