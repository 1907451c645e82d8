"""
Configuration for FlowAssist
============================

Environment variables:
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///./flowassist.db)
- JWT_SECRET_KEY: secret used to sign access, refresh and download tokens
- REDIS_URL: Redis for the job queue and the token blacklist
- SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASSWORD / SMTP_FROM: outgoing mail
- STORAGE_ROOT: directory for uploaded client documents
- BUDGET_ALERT_THRESHOLD_PCT: percentage of a matter budget that triggers an alert
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


DEFAULT_JWT_SECRET = "dev-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Database
    database_url: str = "sqlite:///./flowassist.db"
    sql_echo: bool = False
    db_connect_timeout: int = 5

    # JWT
    jwt_secret_key: str = DEFAULT_JWT_SECRET
    jwt_access_token_expire_minutes: int = 60
    jwt_refresh_token_expire_days: int = 7
    # X-User-Id / X-User-Email identify the caller without a token (development only)
    allow_header_auth: bool = False
    download_url_expire_seconds: int = 60

    # Document storage
    storage_backend: str = "local"
    storage_root: str = "./storage"
    max_upload_bytes: int = 10 * 1024 * 1024
    client_quota_bytes: int = 100 * 1024 * 1024

    # Jobs
    redis_url: str = "redis://localhost:6379/0"

    # Email
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "noreply@flowassist.ma"
    smtp_use_tls: bool = True
    app_url: str = "http://localhost:5173"

    # HTTP
    port: int = 8000
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173"
    enforce_https: bool = False
    hsts_max_age: int = 31536000

    # Business rules
    budget_alert_threshold_pct: int = 80
    currency_label: str = "MAD"

    # Service info
    environment: str = "development"
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def header_auth_enabled(self) -> bool:
        return self.allow_header_auth and self.is_development

    def validate_config(self) -> List[str]:
        """Validate configuration, return list of warnings"""
        warnings = []

        if self.jwt_secret_key == DEFAULT_JWT_SECRET and not self.is_development:
            warnings.append("JWT_SECRET_KEY uses the default value outside development")

        if self.allow_header_auth and not self.is_development:
            warnings.append("ALLOW_HEADER_AUTH is ignored outside development")

        smtp_parts = [self.smtp_host, self.smtp_user, self.smtp_password]
        if any(smtp_parts) and not all(smtp_parts):
            warnings.append("SMTP partially configured (need SMTP_HOST, SMTP_USER and SMTP_PASSWORD); emails will be logged only")

        if not 0 < self.budget_alert_threshold_pct <= 100:
            warnings.append(f"BUDGET_ALERT_THRESHOLD_PCT={self.budget_alert_threshold_pct} is outside 1..100")

        if self.storage_backend != "local":
            warnings.append(f"STORAGE_BACKEND={self.storage_backend} is not supported, using local storage")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
