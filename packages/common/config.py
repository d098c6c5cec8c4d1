"""
Application configuration using Pydantic Settings
Reads from environment variables and .env file
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    db_user: str = Field(default="codify_admin", alias="DB_USER")
    db_password: str = Field(default="", alias="DB_PASSWORD")
    db_name: str = Field(default="item_codification", alias="DB_NAME")
    db_host: str = Field(default="postgres", alias="DB_HOST")
    db_port: int = Field(default=5432, alias="DB_PORT")
    database_url_override: Optional[str] = Field(default=None, alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Construct database URL (DATABASE_URL wins when set)"""
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Redis / Celery
    celery_broker_url: str = Field(default="redis://redis:6379/1", alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(default="redis://redis:6379/2", alias="CELERY_RESULT_BACKEND")
    codification_events_enabled: bool = Field(default=True, alias="CODIFICATION_EVENTS_ENABLED")

    # Application
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Fast Pass / Alias Index
    fuzzy_threshold: float = Field(default=0.85, ge=0.0, le=1.0, alias="CODIFICATION_FUZZY_THRESHOLD")
    similarity_strategy: str = Field(default="ratio", alias="CODIFICATION_SIMILARITY_STRATEGY")
    stale_alias_penalty: float = Field(default=0.5, ge=0.0, le=1.0, alias="CODIFICATION_STALE_ALIAS_PENALTY")

    # Smart Pass (model-assisted resolver)
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    smart_pass_model: str = Field(default="claude-sonnet-4-5", alias="SMART_PASS_MODEL")
    smart_pass_max_tokens: int = Field(default=4000, alias="SMART_PASS_MAX_TOKENS")
    smart_pass_timeout_seconds: float = Field(default=45.0, alias="SMART_PASS_TIMEOUT_SECONDS")
    smart_pass_max_retries: int = Field(default=2, ge=0, alias="SMART_PASS_MAX_RETRIES")
    smart_pass_retry_delay_seconds: float = Field(default=1.0, ge=0.0, alias="SMART_PASS_RETRY_DELAY_SECONDS")
    fallback_confidence: float = Field(default=0.3, ge=0.0, le=1.0, alias="CODIFICATION_FALLBACK_CONFIDENCE")

    # Monitoring
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")

    # Development
    debug: bool = Field(default=False, alias="DEBUG")

    @validator("log_level")
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @validator("environment")
    def validate_environment(cls, v):
        """Validate environment"""
        valid_envs = ["development", "staging", "production", "test"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT must be one of {valid_envs}")
        return v.lower()

    @validator("similarity_strategy")
    def validate_similarity_strategy(cls, v):
        """Validate fuzzy similarity strategy name"""
        valid_strategies = ["ratio", "token_sort_ratio", "levenshtein", "jaro_winkler"]
        if v.lower() not in valid_strategies:
            raise ValueError(f"CODIFICATION_SIMILARITY_STRATEGY must be one of {valid_strategies}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
