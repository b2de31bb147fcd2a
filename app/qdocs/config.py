import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    telegram_bot_token: str
    app_base_url: str
    csrf_enabled: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name, "")
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///qdocs.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        telegram_bot_token=_getenv("TELEGRAM_BOT_TOKEN", ""),
        app_base_url=_getenv("APP_BASE_URL", "http://localhost:5000"),
        csrf_enabled=_getenv_bool("CSRF_ENABLED", True),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "TELEGRAM_BOT_TOKEN": s.telegram_bot_token,
        "APP_BASE_URL": s.app_base_url,
        "CSRF_ENABLED": s.csrf_enabled,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # scanned imports can be large
        "MAX_CONTENT_LENGTH": 50 * 1024 * 1024,
    }
