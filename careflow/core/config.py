from typing import List, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API Configuration
    api_v1_prefix: str = Field(default="/api/v1")
    api_title: str = Field(default="Careflow Onboarding API")
    api_version: str = Field(default="1.0.0")
    log_level: str = Field(default="INFO")

    # Environment (for conditional behaviour)
    environment: str = Field(default="development")

    # Redis (draft storage)
    redis_url: str = Field(default="redis://localhost:6379")

    # Supabase
    supabase_url: str
    supabase_anon_key: str
    supabase_service_key: str
    # Note: Supabase owns password hashing, token issuance and OTP delivery.
    # The onboarding engine only orchestrates calls to it.

    # Draft persistence
    draft_key: str = Field(default="onboarding_progress")
    draft_scope: str = Field(default="default")
    draft_ttl_seconds: int = Field(default=30 * 60)

    # Auth step rules
    password_min_length: int = Field(default=8)
    otp_code_length: int = Field(default=8)
    resend_cooldown_initial_seconds: int = Field(default=30)
    resend_cooldown_seconds: int = Field(default=60)

    # Organization search (claim an existing listing)
    org_search_limit: int = Field(default=10)

    # In-process flow registry used by the HTTP surface
    flow_registry_ttl_seconds: int = Field(default=60 * 60)

    # CORS
    cors_origins: Union[str, List[str]] = Field(default="http://localhost:3000")
    cors_allow_credentials: bool = Field(default=True)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            # Handle comma-separated string
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("draft_ttl_seconds", "resend_cooldown_initial_seconds", "resend_cooldown_seconds")
    @classmethod
    def ensure_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v


settings = Settings()
