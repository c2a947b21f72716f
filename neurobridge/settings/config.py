# neurobridge/settings/config.py  (Pydantic v2)
from datetime import timedelta
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field


class Settings(BaseSettings):
    # ---------- Auth ----------
    JWT_SECRET: str = Field(default="")
    ACCESS_TTL: timedelta = Field(default=timedelta(hours=1))
    REFRESH_TTL: timedelta = Field(default=timedelta(days=30))
    # absorbs clock skew and client retry races on refresh
    REFRESH_GRACE: timedelta = Field(default=timedelta(minutes=5))
    PASSWORD_MIN_LENGTH: int = Field(default=8)

    # ---------- Object storage ----------
    STORAGE_BACKEND: Literal["local", "s3"] = Field(default="local")
    STORAGE_LOCAL_ROOT: str = Field(default="static/uploads")
    STORAGE_PUBLIC_BASE_URL: str = Field(default="/static/uploads")
    S3_MATERIAL_BUCKET: Optional[str] = Field(default=None)
    AWS_REGION: str = Field(default="us-east-1")

    # ---------- Workflow engine ----------
    # unset => dispatch is logged only (engine disabled)
    WORKFLOW_ENGINE_URL: Optional[str] = Field(default=None)
    WORKFLOW_DISPATCH_TIMEOUT: float = Field(default=10.0)
    DISPATCH_RECONCILE_INTERVAL: timedelta = Field(default=timedelta(minutes=1))
    DISPATCH_RECONCILE_AFTER: timedelta = Field(default=timedelta(minutes=2))
    DISPATCH_RECONCILE_BATCH: int = Field(default=50)

    # ---------- Uploads ----------
    MAX_PROMPT_CHARS: int = Field(default=20000)

    # ---------- Gaze stream ----------
    GAZE_STREAM_ENABLED: bool = Field(default=True)
    GAZE_STREAM_STORE_RAW: bool = Field(default=False)
    # unprefixed GAZE_* names are still read for older deployments
    GAZE_STREAM_RETENTION_DAYS: int = Field(
        default=30, validation_alias=AliasChoices("GAZE_STREAM_RETENTION_DAYS", "GAZE_RETENTION_DAYS")
    )
    GAZE_STREAM_MIN_CONFIDENCE_PCT: int = Field(
        default=40, validation_alias=AliasChoices("GAZE_STREAM_MIN_CONFIDENCE_PCT", "GAZE_MIN_CONFIDENCE_PCT")
    )
    GAZE_STREAM_MAX_BATCH: int = Field(
        default=400, validation_alias=AliasChoices("GAZE_STREAM_MAX_BATCH", "GAZE_MAX_BATCH")
    )
    GAZE_STREAM_MAX_POINTS_PER_SEC: int = Field(
        default=30, validation_alias=AliasChoices("GAZE_STREAM_MAX_POINTS_PER_SEC", "GAZE_MAX_POINTS_PER_SEC")
    )

    # ---------- LLM / API keys ----------
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_BASE_URL: str = Field(default="https://api.openai.com/v1")
    OPENAI_MODEL: str = Field(default="gpt-4o-mini")
    OPENAI_EMBED_MODEL: str = Field(default="text-embedding-3-small")
    OPENAI_TIMEOUT_SECONDS: float = Field(default=180.0)
    OPENAI_MAX_RETRIES: int = Field(default=4)

    # ---------- pydantic-settings config ----------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,  # allow lower/upper env names
        extra="ignore",
    )


settings = Settings()
