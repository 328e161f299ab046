from pathlib import Path
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./coursecompass.db"

    # JWT
    secret_key: str = "your-secret-key-change-in-production"
    refresh_secret_key: str = "your-refresh-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    cookie_secure: bool = False

    # Frontend URL for CORS
    frontend_url: str = "http://localhost:3000"

    # Upload root: absolute path (empty = backend/uploads). Holds avatars/, thumbnails/, videos/, temp/
    upload_root: str = ""

    # Size limits in bytes
    video_max_size: int = 500 * 1024 * 1024
    image_max_size: int = 5 * 1024 * 1024
    avatar_max_size: int = 2 * 1024 * 1024
    max_files_per_request: int = 5

    # Temp chunk reaper
    temp_file_max_age_hours: int = 24
    cleanup_interval_seconds: int = 3600

    # Upload rate limit (per user, fixed window). A chunked upload is one request per chunk.
    upload_rate_limit: int = 60
    upload_rate_window_seconds: int = 60

    # Redis (optional, shared rate-limit counters; empty = in-process counters)
    redis_url: str = ""  # e.g. redis://localhost:6379/0

    debug: bool = False

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def upload_root() -> Path:
    settings = get_settings()
    if settings.upload_root:
        return Path(settings.upload_root)
    return Path(__file__).resolve().parent.parent / "uploads"
