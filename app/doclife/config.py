import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    local_storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    # Prototype label overflow after vZ: "extend" (vAA, vAB, ...) or "error".
    label_overflow: str
    allocate_max_retries: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    overflow = _getenv("LABEL_OVERFLOW", "extend").lower()
    if overflow not in ("extend", "error"):
        raise RuntimeError(f"LABEL_OVERFLOW must be 'extend' or 'error' (got {overflow!r}).")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///doclife.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        local_storage_root=_getenv("LOCAL_STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        label_overflow=overflow,
        allocate_max_retries=max(0, _getenv_int("ALLOCATE_MAX_RETRIES", 3)),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "LABEL_OVERFLOW": s.label_overflow,
        "ALLOCATE_MAX_RETRIES": s.allocate_max_retries,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # attachment upload limit (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }


def setting(key: str, default=None):
    """Read a config value from the active Flask app, falling back to `default` outside one."""
    from flask import current_app, has_app_context

    if not has_app_context():
        return default
    return current_app.config.get(key, default)
