from typing import List, Literal, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "Whisper Ritual Server"
    VERSION: str = "1.0.0"
    WEB_SOCKET_PREFIX: str = "/ws"
    """Pydantic v2 doesn't support parsing List[str] from a plain comma-separated string by default anymore."""
    ALLOWED_HOSTS: Union[str, List[str]] = "http://localhost:8081"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./whisper.db"
    DATABASE_ECHO: bool = False

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Ritual scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_BACKEND: Literal["asyncio", "celery"] = "asyncio"
    REMINDER_INTERVAL_SECONDS: int = 60
    MISSED_SWEEP_INTERVAL_SECONDS: int = 15 * 60
    PAST_DUE_SWEEP_INTERVAL_SECONDS: int = 15 * 60
    SWEEP_BATCH_SIZE: int = 200
    REMINDER_WINDOW_LATE_MINUTES: int = 5
    REMINDER_WINDOW_EARLY_MINUTES: int = 1
    REMINDER_DEDUP_TTL_SECONDS: int = 15 * 60
    PAST_DUE_RETENTION_HOURS: int = 24
    # Hard limit of one Celery tick; also the lifetime of its per-job lock
    TICK_TIME_LIMIT_SECONDS: int = 10 * 60

    # Push notifications
    PUSH_CHUNK_SIZE: int = 450
    PUSH_HTTP_TIMEOUT_SECONDS: float = 15.0
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    EXPO_ACCESS_TOKEN: str = ""
    FCM_PROJECT_ID: str = ""
    FCM_CLIENT_EMAIL: str = ""
    FCM_PRIVATE_KEY: str = ""

    @field_validator("ALLOWED_HOSTS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if not v:
            return []
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        return v

    @field_validator("FCM_PRIVATE_KEY", mode="before")
    def unescape_private_key(cls, v: str) -> str:
        # Keys pasted into .env usually carry literal "\n" sequences
        return v.replace("\\n", "\n") if isinstance(v, str) else v

    @property
    def redis_url(self) -> str:
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def fcm_enabled(self) -> bool:
        return all([self.FCM_PROJECT_ID, self.FCM_CLIENT_EMAIL, self.FCM_PRIVATE_KEY])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
