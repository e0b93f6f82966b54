from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # Storage backend for ledger + jobs: "mongo" | "memory"
    store_backend: str = Field(default="mongo", alias="STORE_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="propstudio", alias="MONGODB_DB_NAME")

    # Redis (arq)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Replicate
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_base_url: str = Field(default="https://api.replicate.com/v1", alias="REPLICATE_BASE_URL")
    replicate_timeout_seconds: float = Field(default=30.0, alias="REPLICATE_TIMEOUT_SECONDS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Credits
    default_credits: int = 5
    max_batch_items: int = 10

    # Pricing (credits per item)
    credits_per_image_edit: int = 1
    credits_per_ocr: int = 1
    credits_per_video: int = 4
    credits_per_voice_clone: int = 2
    credits_per_avatar: int = 3

    # Polling (seconds / attempts)
    poll_interval_image_edit: float = 2.0
    poll_max_attempts_image_edit: int = 60
    poll_interval_ocr: float = 2.0
    poll_max_attempts_ocr: int = 30
    poll_interval_video: float = 5.0
    poll_max_attempts_video: int = 720
    poll_interval_voice_clone: float = 2.0
    poll_max_attempts_voice_clone: int = 60
    poll_interval_avatar: float = 2.0
    poll_max_attempts_avatar: int = 120
    poll_jitter_seconds: float = 0.5
    poll_max_errors: int = 3

    # Worker: "arq" enqueues drive_job on Redis, "inline" drives jobs as asyncio tasks in the API process
    job_runner: str = Field(default="arq", alias="JOB_RUNNER")
    stalled_job_seconds: int = 300


@lru_cache
def get_settings() -> Settings:
    return Settings()
