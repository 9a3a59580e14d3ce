from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from whatsapp_ai.utils import normalize_phone_number


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Key-value store
    DATABASE_URL: str = "sqlite:///./chatbot.db"
    CHAT_TTL_DAYS: int = 90
    HISTORY_LIMIT: int = 20
    DEDUP_TTL_SECONDS: int = 86400

    # Logging
    LOG_LEVEL: str = "INFO"

    # Webhook security
    WHATSAPP_VERIFY_TOKEN: str = ""
    META_APP_SECRET: str = ""
    WEBHOOK_REQUIRE_SIGNATURE: bool = False

    # WhatsApp Graph API
    WHATSAPP_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v22.0"
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    WHATSAPP_TIMEOUT_SECONDS: float = 10.0

    # Comma-separated, e.g. "+972585722391,+14155550100"
    AUTHORIZED_PHONE_NUMBERS: str = ""

    # LLM
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT_SECONDS: float = 30.0

    # Admin API, disabled when empty
    ADMIN_TOKEN: str = ""

    @property
    def authorized_numbers(self) -> frozenset[str]:
        """Allow-list in canonical +<digits> form."""
        return frozenset(
            normalize_phone_number(number)
            for number in self.AUTHORIZED_PHONE_NUMBERS.split(",")
            if any(ch.isdigit() for ch in number)
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
