from pathlib import Path
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Feishu application credentials (CoreHR + contacts + IM)
    FEISHU_APP_ID: str | None = None
    FEISHU_APP_SECRET: str | None = None
    FEISHU_VERIFICATION_TOKEN: str | None = None

    # Where bot cards go: app chat (preferred) or custom-bot webhook
    FEISHU_BOT_CHAT_ID: str | None = None
    FEISHU_BOT_WEBHOOK: str | None = None

    # Ride-service enterprise account
    RIDE_CLIENT_ID: str | None = None
    RIDE_CLIENT_SECRET: str | None = None
    RIDE_ACCESS_TOKEN: str | None = None
    RIDE_DEFAULT_RULE_ID: str | None = None
    RIDE_MIN_REQUEST_INTERVAL_SECONDS: float = 1.0
    RIDE_PRIMARY_RULE_CATEGORY: str = "commute"
    RIDE_SECONDARY_RULE_CATEGORY: str = "business"

    # =================================================================
    # BOT CADENCE SETTINGS
    # =================================================================
    EMAIL_DOMAIN: str = "guanghe.tv"
    BOT_CHECK_INTERVAL_SECONDS: float = 1800.0  # 30 minutes
    BOT_INITIAL_DELAY_SECONDS: float = 10.0
    DAILY_DIGEST_HOUR: int = 9
    DAILY_DIGEST_MINUTE: int = 0
    REFERENCE_TIMEZONE: str = "Asia/Shanghai"
    DASHBOARD_URL: str = "http://localhost:8000"

    # City -> cadence, e.g. {"北京": {"type": "scheduled", "days": [1, 3]}}
    CITY_PUSH_RULES: dict[str, dict[str, Any]] = {
        "北京": {"type": "scheduled", "days": [1, 3]},  # Monday / Wednesday
        "武汉": {"type": "realtime"},
    }
    DEFAULT_PUSH_RULE: dict[str, Any] = {"type": "scheduled", "days": [1, 3]}

    # Bounded in-memory state
    AUDIT_LOG_CAPACITY: int = 200
    SENT_MESSAGE_CAPACITY: int = 50

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def bot_enabled(self) -> bool:
        """The bot only runs when it has somewhere to post cards."""
        return bool(self.FEISHU_BOT_CHAT_ID or self.FEISHU_BOT_WEBHOOK)

    def ride_configured(self) -> bool:
        return bool(self.RIDE_CLIENT_ID and self.RIDE_CLIENT_SECRET and self.RIDE_ACCESS_TOKEN)

    def get_push_rule_config(self) -> dict:
        """
        Get cadence configuration for the push policy.

        Returns:
            dict: {"rules": {...}, "default": {...}, "timezone": "..."}
        """
        return {
            "rules": dict(self.CITY_PUSH_RULES),
            "default": dict(self.DEFAULT_PUSH_RULE),
            "timezone": self.REFERENCE_TIMEZONE,
        }


settings = Settings()
