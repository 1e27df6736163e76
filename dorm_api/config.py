"""Configuration management for the dormitory dashboard API."""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    api_title: str = Field(default="Dormitory Electricity API", alias="API_TITLE")
    api_version: str = Field(default="1.0.0", alias="API_VERSION")
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=3001, alias="PORT")

    # Comma-separated list of allowed origins ("*" for any)
    cors_origins_raw: str = Field(default="*", alias="CORS_ORIGINS")

    # Run the periodic collection loop inside the API process
    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins_raw.split(",") if o.strip()]


# Global settings instance
settings = Settings()
