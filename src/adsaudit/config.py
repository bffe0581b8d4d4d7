from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _csv_list(v: str | None) -> tuple[str, ...]:
    if not v:
        return ()
    return tuple(p.strip() for p in v.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    web_host: str
    web_port: int
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    hmac_max_skew_seconds: int = 300
    session_ttl_hours: int = 12
    worker_interval_seconds: int = 300
    auto_audit_on_complete: bool = True
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"
    ai_max_tokens: int = 4096
    ai_timeout_seconds: float = 120.0

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ADS_DB_PATH", "./data/audit.sqlite3"))
        timezone = os.getenv("ADS_TIMEZONE", "Europe/Rome").strip() or "Europe/Rome"
        web_host = os.getenv("ADS_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("ADS_WEB_PORT", "8010"))

        cors_origins = _csv_list(os.getenv("ADS_CORS_ORIGINS", "*")) or ("*",)
        log_level = (os.getenv("ADS_LOG_LEVEL", "INFO").strip() or "INFO").upper()
        max_skew = int(os.getenv("ADS_HMAC_MAX_SKEW_SECONDS", "300"))
        session_ttl = int(os.getenv("ADS_SESSION_TTL_HOURS", "12"))
        worker_interval = int(os.getenv("ADS_WORKER_INTERVAL_SECONDS", "300"))
        auto_audit = _truthy(os.getenv("ADS_AUTO_AUDIT_ON_COMPLETE", "1"))

        openai_api_key = os.getenv("OPENAI_API_KEY") or None
        openai_model = os.getenv("OPENAI_MODEL", "gpt-4o").strip() or "gpt-4o"
        openai_base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
        ai_max_tokens = int(os.getenv("AI_MAX_TOKENS", "4096"))
        ai_timeout = float(os.getenv("AI_TIMEOUT_SECONDS", "120"))

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            cors_origins=cors_origins,
            log_level=log_level,
            hmac_max_skew_seconds=max_skew,
            session_ttl_hours=session_ttl,
            worker_interval_seconds=worker_interval,
            auto_audit_on_complete=auto_audit,
            openai_api_key=openai_api_key,
            openai_model=openai_model,
            openai_base_url=openai_base_url,
            ai_max_tokens=ai_max_tokens,
            ai_timeout_seconds=ai_timeout,
        )
