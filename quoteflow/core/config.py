"""
Application configuration with environment variables.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "QuoteFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "your-secret-key-change-in-production"

    # Database
    POSTGRES_USER: str = "quoteflow"
    POSTGRES_PASSWORD: str = "quoteflow"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "quoteflow"
    DATABASE_URL: Optional[str] = Field(None, validate_default=True)

    # Redis (rq queues for e-mail delivery and scheduled checks)
    REDIS_URL: str = "redis://redis:6379/0"

    # JWT Settings (tokens are issued by the identity provider, verified here)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # =========================================
    # Workflow Settings
    # =========================================

    # Cost calculations strictly above this total need managerial sign-off
    APPROVAL_THRESHOLD: float = 10000.0
    DEFAULT_QUOTE_VALIDITY_DAYS: int = 30
    QUOTE_NUMBER_ATTEMPTS: int = 5

    # Automation recursion bound per (trigger, entity) in one evaluation pass
    AUTOMATION_MAX_DEPTH: int = 3

    # Assignee counts as overloaded above OVERLOAD_FACTOR x average pending items
    OVERLOAD_FACTOR: float = 1.5

    # Deadline reminders
    DEADLINE_WARNING_DAYS: int = 3
    DEADLINE_ESCALATION_DAYS: int = 1
    DEADLINE_CHECK_INTERVAL_SECONDS: int = 3600

    # E-mail delivery goes through the rq "high" queue; disable for local runs
    EMAIL_DELIVERY_ENABLED: bool = True
    EMAIL_FROM: str = "quotes@quoteflow.local"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True

    # Admin bootstrap - used to create initial admin on first startup
    # Only used if no users exist in database
    ADMIN_BOOTSTRAP_EMAIL: Optional[str] = None

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def assemble_db_url(cls, v: Optional[str], info) -> str:
        if isinstance(v, str) and v:
            return v

        data = info.data
        user = data.get("POSTGRES_USER", "quoteflow")
        password = data.get("POSTGRES_PASSWORD", "quoteflow")
        host = data.get("POSTGRES_HOST", "postgres")
        port = data.get("POSTGRES_PORT", "5432")
        db = data.get("POSTGRES_DB", "quoteflow")

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @field_validator('SECRET_KEY')
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Reject weak SECRET_KEY in production, warn in development."""
        weak_keys = {
            "your-secret-key-change-in-production",
            "change-me-in-production",
            "secret",
            "changeme",
        }
        is_weak = v in weak_keys or len(v) < 32
        if is_weak:
            debug = info.data.get("DEBUG", False)
            if not debug:
                raise ValueError(
                    "SECRET_KEY is weak or default. "
                    "Generate a strong key with: openssl rand -hex 32"
                )
            import warnings
            warnings.warn(
                "SECRET_KEY is weak or default! Set a strong key before deploying.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator('POSTGRES_PASSWORD')
    @classmethod
    def validate_postgres_password(cls, v: str, info) -> str:
        """Reject default database password in production."""
        weak = {"quoteflow", "postgres", "password", "changeme", ""}
        if v in weak and not info.data.get("DEBUG", False):
            raise ValueError(
                "POSTGRES_PASSWORD is set to a default value. "
                "Set a strong database password for production."
            )
        return v

    @field_validator('APPROVAL_THRESHOLD', 'OVERLOAD_FACTOR')
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator('AUTOMATION_MAX_DEPTH')
    @classmethod
    def validate_max_depth(cls, v: int) -> int:
        if v < 1:
            raise ValueError("AUTOMATION_MAX_DEPTH must be at least 1")
        return v


settings = Settings()
