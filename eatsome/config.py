# eatsome/config.py
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _database_url() -> str:
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")

    # Build Postgres URL from individual env vars when a host is configured
    if os.getenv("DB_HOST"):
        db_user = os.getenv("DB_USER", "postgres")
        db_pass = os.getenv("DB_PASSWORD", "password")
        db_host = os.getenv("DB_HOST")
        db_port = os.getenv("DB_PORT", "5432")
        db_name = os.getenv("DB_DATABASE", "eatsome")
        return f"postgresql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}"

    return "sqlite:///./eatsome.db"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./eatsome.db"

    # AI provider
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    model_id: str = "gpt-4o-2024-08-06"
    ai_timeout_seconds: float = 60.0
    openai_max_retries: int = 2
    image_check_timeout_seconds: float = 10.0
    image_check_delays: Tuple[float, ...] = (0.0, 1.0, 3.0)

    # Telegram
    telegram_bot_token: Optional[str] = None
    telegram_webhook_secret: Optional[str] = None
    external_url: Optional[str] = None
    web_app_url: str = ""
    bot_web_app_url: str = ""

    # Media
    cdn_url: str = ""
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_bucket: Optional[str] = None
    aws_endpoint: Optional[str] = None
    presign_ttl_seconds: int = 900
    avatar_fallback_url: str = "https://fm-assets.mxksim.dev/avatars/{n}.svg"

    # Auth
    jwt_secret: str = field(default="change-me", repr=False)
    jwt_ttl_hours: int = 24

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_database_url(),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_base_url=os.getenv("OPENAI_BASE_URL"),
            model_id=os.getenv("MODEL_ID", "gpt-4o-2024-08-06"),
            ai_timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", "60")),
            openai_max_retries=int(os.getenv("OPENAI_MAX_RETRIES", "2")),
            image_check_timeout_seconds=float(os.getenv("IMAGE_CHECK_TIMEOUT_SECONDS", "10")),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET"),
            external_url=os.getenv("EXTERNAL_URL"),
            web_app_url=os.getenv("WEB_APP_URL", ""),
            bot_web_app_url=os.getenv("BOT_WEB_APP_URL", ""),
            cdn_url=os.getenv("CDN_URL", "").rstrip("/"),
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            aws_bucket=os.getenv("AWS_BUCKET"),
            aws_endpoint=os.getenv("AWS_ENDPOINT"),
            presign_ttl_seconds=int(os.getenv("PRESIGN_TTL_SECONDS", "900")),
            avatar_fallback_url=os.getenv(
                "AVATAR_FALLBACK_URL", "https://fm-assets.mxksim.dev/avatars/{n}.svg"
            ),
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            jwt_ttl_hours=int(os.getenv("JWT_TTL_HOURS", "24")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )
