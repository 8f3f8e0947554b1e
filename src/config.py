"""Configuration management for the SmartPlanner auth and token service."""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"
    environment: str = "development"

    # Supabase configuration
    supabase_url: str = "http://localhost:54321"
    supabase_service_role_key: str = "local-service-role-key"

    # SMS gateway (Wasiliana)
    sms_base_url: str = "https://api.wasiliana.com"
    sms_api_key: str = ""
    sms_sender_id: str = "SMARTPLAN"
    sms_timeout_seconds: float = 10.0

    # OTP and session policy
    otp_ttl_minutes: int = 10
    session_ttl_days: int = 7
    session_token_bytes: int = 32
    min_session_token_length: int = 10

    # Pricing, in tokens
    signup_token_grant: int = 5
    login_token_cost: int = 1
    export_token_cost: int = 5
    tokens_per_kes: float = 1.0

    # Cookie transport
    session_cookie_name: str = "session-token"
    session_cookie_secure: bool = False

    # Rate limiting
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60

    # Logging configuration
    log_level: str = "INFO"

    # OpenTelemetry export
    otlp_endpoint: Optional[str] = None
    otel_console_export: bool = False

    @field_validator('supabase_url')
    @classmethod
    def validate_supabase_url(cls, v):
        if not v:
            raise ValueError('SUPABASE_URL environment variable is required')
        return v

    @field_validator('supabase_service_role_key')
    @classmethod
    def validate_supabase_service_role_key(cls, v):
        if not v:
            raise ValueError('SUPABASE_SERVICE_ROLE_KEY environment variable is required')
        return v

    @field_validator('sms_timeout_seconds')
    @classmethod
    def validate_sms_timeout(cls, v):
        if not 0.0 < v <= 60.0:
            raise ValueError('SMS_TIMEOUT_SECONDS must be between 0 and 60')
        return v

    @field_validator('otp_ttl_minutes')
    @classmethod
    def validate_otp_ttl(cls, v):
        if not 5 <= v <= 10:
            raise ValueError('OTP_TTL_MINUTES must be between 5 and 10')
        return v

    @field_validator('session_token_bytes')
    @classmethod
    def validate_session_token_bytes(cls, v):
        if v < 32:
            raise ValueError('SESSION_TOKEN_BYTES must be at least 32')
        return v

    @field_validator('signup_token_grant', 'login_token_cost', 'export_token_cost')
    @classmethod
    def validate_token_amounts(cls, v):
        if v <= 0:
            raise ValueError('Token amounts must be positive')
        return v

    @field_validator('tokens_per_kes')
    @classmethod
    def validate_tokens_per_kes(cls, v):
        if v <= 0:
            raise ValueError('TOKENS_PER_KES must be positive')
        return v


# Global settings instance
settings = Settings()
