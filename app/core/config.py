"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Comma-separated list of allowed origins. Empty = built-in default list.
    cors_origins: str = ""
    # Public base URL, used for the provider status callback.
    app_url: str = "http://localhost:8000"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # AUTH (tokens are issued by the account service)
    # ===========================================
    jwt_secret_key: str  # Required, no default
    jwt_algorithm: str = "HS256"

    # ===========================================
    # TELEPHONY PROVIDER (Exotel)
    # ===========================================
    exotel_sid: str  # Required, no default
    exotel_api_key: str  # Required, no default
    exotel_api_token: str  # Required, no default
    exotel_subdomain: str = "api.exotel.com"
    exotel_virtual_number: str = ""
    exotel_timeout: float = 10.0
    exotel_call_time_limit: int = 3600
    exotel_ring_timeout: int = 30
    # Shared token expected as ?token= on status callbacks. Empty = not checked.
    exotel_webhook_token: str = ""

    # ===========================================
    # CALL CREDITS
    # ===========================================
    credit_validity_months: int = 3
    credits_per_call: int = 1
    stuck_call_threshold_minutes: int = 2
    call_logs_limit: int = 50

    # Budget defaults used when the settings row does not exist yet
    default_budget_total_credits: int = 10000
    default_budget_cost_per_minute: float = 1.0
    default_budget_monthly_limit: int = 5000

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis, memory

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("cb_storage")
    @classmethod
    def validate_cb_storage(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("redis", "memory"):
            raise ValueError("cb_storage must be 'redis' or 'memory'")
        return v

    @field_validator("credit_validity_months", "credits_per_call")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure the token secret is reasonably secure."""
        if len(v) < 16:
            raise ValueError("jwt_secret_key must be at least 16 characters")
        if v in ("changeme", "secret", "fallback-secret"):
            raise ValueError("jwt_secret_key is too weak, please change it")
        return v

    @property
    def exotel_base_url(self) -> str:
        return f"https://{self.exotel_subdomain}/v1/Accounts/{self.exotel_sid}"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
