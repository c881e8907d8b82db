"""
Ticket Engine - Configuration Management
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings"""

    # Remote ticket service
    ticket_api_base_url: str = "http://localhost:3001"
    ticket_api_token: str = ""
    request_timeout: float = 30.0
    max_retries: int = 3  # detail/list fetch path only, mutations are never retried

    # Reconciliation
    refresh_debounce_ms: int = 300
    list_page_size: int = 50

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def refresh_debounce_seconds(self) -> float:
        """Debounce window in seconds"""
        return self.refresh_debounce_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
