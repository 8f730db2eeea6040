"""Application configuration."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="null",
    )

    # Application
    app_name: str = Field(default="Clinic Scheduler API", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_v1_prefix: str = Field(default="/api/v1", alias="API_V1_PREFIX")

    # Server
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    reload: bool = Field(default=False, alias="RELOAD")

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    database_isolation_level: str = Field(default="SERIALIZABLE", alias="DATABASE_ISOLATION_LEVEL")

    # Redis
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_decode_responses: bool = Field(default=True, alias="REDIS_DECODE_RESPONSES")

    # JWT
    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Collaborators
    patient_directory_url: str = Field(
        default="http://patients.internal", alias="PATIENT_DIRECTORY_URL"
    )
    practitioner_directory_url: str = Field(
        default="http://practitioners.internal", alias="PRACTITIONER_DIRECTORY_URL"
    )
    treatment_catalog_url: str = Field(
        default="http://treatments.internal", alias="TREATMENT_CATALOG_URL"
    )
    notification_service_url: str = Field(
        default="http://notifications.internal", alias="NOTIFICATION_SERVICE_URL"
    )
    directory_timeout_seconds: float = Field(default=5.0, alias="DIRECTORY_TIMEOUT_SECONDS")
    # Practitioner/treatment lookups change rarely
    directory_cache_ttl: int = Field(default=300, alias="DIRECTORY_CACHE_TTL")
    notification_timeout_seconds: float = Field(
        default=10.0, alias="NOTIFICATION_TIMEOUT_SECONDS"
    )

    # Scheduling
    scheduler_max_retries: int = Field(default=3, ge=1, alias="SCHEDULER_MAX_RETRIES")
    clinic_timezone: str = Field(
        default="UTC",
        alias="CLINIC_TIMEZONE",
        description="IANA timezone used to resolve calendar days for daily agendas",
    )

    # CORS
    cors_origins_str: str = Field(
        default="http://localhost:3000",
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    @property
    def cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        if isinstance(self.cors_origins_str, str):
            return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]
        return [self.cors_origins_str]

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance
settings = get_settings()
