
from pathlib import Path
from typing import List, Optional
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]  # repo root

class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'app.sqlite3'}"

    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/auth/callback"

    # shared with the calling service; signs correlation state too
    SERVICE_SHARED_SECRET: str = Field(
        default="",
        validation_alias=AliasChoices("SERVICE_SHARED_SECRET", "TRAFFIC_DOCTOR_API_KEY", "JWT_SHARED_SECRET"),
    )
    POST_AUTH_REDIRECT_BASE: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("POST_AUTH_REDIRECT_BASE", "AI_DOCTOR_BASE_URL"),
    )
    ENCRYPTION_KEY: str = ""

    CORS_ORIGINS: List[str] = []

    HTTP_TIMEOUT_SECONDS: float = 15.0
    STATE_TTL_SECONDS: int = 300
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300

    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY_SECONDS: float = 0.5
    RETRY_BACKOFF_FACTOR: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 8.0
    RETRY_MAX_TOTAL_DELAY_SECONDS: float = 20.0
    RETRY_JITTER: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("POST_AUTH_REDIRECT_BASE", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

settings = Settings()
