"""
Configuration and Settings Management

This module handles all application configuration using Pydantic Settings
with support for environment variables and 12-Factor App principles.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# =============================================================================
# Base Directories
# =============================================================================

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()

# =============================================================================
# Core Application Settings
# =============================================================================

class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be overridden via environment variables.
    """

    # =========================================================================
    # Application Core
    # =========================================================================

    APP_NAME: str = "CampusReport"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Campus facility damage reporting API"

    ENVIRONMENT: Literal["development", "testing", "staging", "production"] = "development"
    DEBUG: bool = Field(default=False, description="Debug mode")

    # Security
    SECRET_KEY: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        description="Secret key for signing JWT access tokens"
    )
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(
        default=60 * 24,
        description="Access token lifetime in minutes"
    )

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:5173"],
        description="Allowed CORS origins"
    )

    # =========================================================================
    # Database Configuration
    # =========================================================================

    POSTGRES_HOST: str = Field(default="localhost", description="PostgreSQL host")
    POSTGRES_PORT: int = Field(default=5432, description="PostgreSQL port")
    POSTGRES_DB: str = Field(default="campus_report", description="Database name")
    POSTGRES_USER: str = Field(default="postgres", description="Database user")
    POSTGRES_PASSWORD: str = Field(default="postgres", description="Database password")

    DATABASE_POOL_SIZE: int = Field(default=10, description="Database connection pool size")
    DATABASE_MAX_OVERFLOW: int = Field(default=20, description="Max overflow connections")
    DATABASE_POOL_TIMEOUT: int = Field(default=30, description="Pool timeout in seconds")
    DATABASE_ECHO: bool = Field(default=False, description="Echo SQL queries")

    # Startup connectivity check
    DATABASE_CONNECT_ATTEMPTS: int = Field(default=10, description="Startup connection attempts")

    # Computed database URL (will be set by model_validator)
    DATABASE_URL: Optional[str] = None

    @model_validator(mode='after')
    def assemble_database_url(self) -> 'Settings':
        # Respect explicit DATABASE_URL from environment if provided
        url = self.DATABASE_URL
        if not url:
            url = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        # Normalize common URL schemes to SQLAlchemy async driver
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        object.__setattr__(self, "DATABASE_URL", url)
        return self

    # =========================================================================
    # External APIs Configuration
    # =========================================================================

    # Generative model (Gemini REST API)
    GEMINI_API_KEY: Optional[str] = Field(default=None, description="Gemini API key")
    GEMINI_API_BASE_URL: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST API base URL"
    )
    GEMINI_TEXT_MODEL: str = Field(default="gemini-2.5-flash", description="Model for chatbot replies")
    GEMINI_VISION_MODEL: str = Field(default="gemini-2.0-flash", description="Model for image analysis")

    # Google sign-in
    GOOGLE_CLIENT_ID: Optional[str] = Field(default=None, description="OAuth client id for Google sign-in")
    GOOGLE_TOKENINFO_URL: str = Field(
        default="https://oauth2.googleapis.com/tokeninfo",
        description="Google ID token verification endpoint"
    )

    # =========================================================================
    # File Storage Configuration
    # =========================================================================

    UPLOAD_DIR: Path = Field(default=PROJECT_ROOT / "uploads")
    UPLOAD_URL_PREFIX: str = Field(default="/uploads")
    MAX_FILE_SIZE_MB: int = Field(default=10, description="Max file size in MB")
    ALLOWED_FILE_TYPES: List[str] = Field(
        default=["image/jpeg", "image/png", "image/webp"],
        description="Allowed MIME types for uploads"
    )

    # =========================================================================
    # Logging and Monitoring
    # =========================================================================

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "pretty"] = Field(default="json")
    METRICS_ENABLED: bool = Field(default=True)

    # =========================================================================
    # Internationalization
    # =========================================================================

    SUPPORTED_LANGUAGES: List[str] = Field(default=["en", "id"])
    DEFAULT_LANGUAGE: str = Field(default="en")
    SYSTEM_ADMIN_NAME: str = Field(default="System Admin", description="Author of automatic comments")

    # =========================================================================
    # Business Logic Configuration
    # =========================================================================

    MIN_PASSWORD_LENGTH: int = Field(default=6)
    ACTIVE_USER_WINDOW_DAYS: int = Field(default=30)
    CHATBOT_RECENT_TITLES: int = Field(default=5)

    # =========================================================================
    # Development and Testing
    # =========================================================================

    AUTO_RELOAD: bool = Field(default=False)
    SHOW_DOCS: bool = Field(default=True, description="Show API documentation")

    # =========================================================================
    # Validation and Post-Processing
    # =========================================================================

    @field_validator('CORS_ORIGINS', mode='before')
    def assemble_cors_origins(cls, v: Any) -> List[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str) and not v.startswith('['):
            return [i.strip() for i in v.split(',')]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(f"Invalid CORS_ORIGINS: {v}")

    @field_validator('UPLOAD_DIR')
    def ensure_upload_dir_exists(cls, v: Path) -> Path:
        """Ensure upload directory exists."""
        v = Path(v)
        v.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode='after')
    def validate_language(self) -> 'Settings':
        if self.DEFAULT_LANGUAGE not in self.SUPPORTED_LANGUAGES:
            raise ValueError("DEFAULT_LANGUAGE must be one of SUPPORTED_LANGUAGES")
        return self

    # =========================================================================
    # Environment-specific configurations
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def DATABASE_ENGINE_OPTIONS(self) -> Dict[str, Any]:
        """Database engine configuration options."""
        options: Dict[str, Any] = {
            "echo": self.DATABASE_ECHO and not self.is_production,
            "pool_pre_ping": True,
        }
        # SQLite (tests, local runs) does not use a sized connection pool
        if not str(self.DATABASE_URL).startswith("sqlite"):
            options.update({
                "pool_size": self.DATABASE_POOL_SIZE,
                "max_overflow": self.DATABASE_MAX_OVERFLOW,
                "pool_timeout": self.DATABASE_POOL_TIMEOUT,
                "pool_recycle": 3600,
            })
        return options

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "validate_assignment": True,
        "extra": "ignore",
    }


# =============================================================================
# Settings Instance and Cache
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Cached to avoid re-parsing environment variables on every call.
    """
    return Settings()


settings = get_settings()


# =============================================================================
# Logging Configuration
# =============================================================================

def setup_logging() -> None:
    """Configure structured logging for the application."""
    import re
    import sys

    import structlog

    def _ensure_exc_info_processor(logger, method_name, event_dict):
        if event_dict.get("exc_info"):
            return event_dict
        if method_name in ("error", "exception", "critical"):
            if sys.exc_info()[0] is not None:
                event_dict["exc_info"] = True
        return event_dict

    SENSITIVE_KEYS = {"authorization", "token", "api_key", "password", "secret"}
    token_pattern = re.compile(r"(AIza[0-9A-Za-z_-]{35}|eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9._-]+)")

    def redact_secrets(_, __, event_dict):
        for key, value in list(event_dict.items()):
            if isinstance(value, str):
                event_dict[key] = token_pattern.sub("***REDACTED***", value)
            elif isinstance(value, dict):
                for k in list(value.keys()):
                    if k and str(k).lower() in SENSITIVE_KEYS:
                        value[k] = "***REDACTED***"
            if key.lower() in SENSITIVE_KEYS:
                event_dict[key] = "***REDACTED***"
        for sensitive in ("SECRET_KEY", "POSTGRES_PASSWORD", "GEMINI_API_KEY"):
            if sensitive in event_dict:
                event_dict[sensitive] = "***REDACTED***"
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _ensure_exc_info_processor,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.LOG_FORMAT == "pretty"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.LOG_LEVEL.upper())
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper()),
        format="%(message)s" if settings.LOG_FORMAT == "json" else None,
    )

    if settings.is_production:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
