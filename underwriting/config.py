"""
Application configuration using Pydantic Settings.
"""

import os
from functools import lru_cache
from pydantic_settings import BaseSettings


def get_env_file() -> str:
    """Determine which env file to use based on environment."""
    env = os.getenv("APP_ENV", "development")
    if env == "production":
        return ".env.production"
    return ".env.development"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./dev.db"

    # App settings
    app_name: str = "RE Underwriting Engine"
    debug: bool = False
    log_level: str = "INFO"
    app_env: str = "development"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # IRR solver
    irr_lower_bound: float = -0.99
    irr_upper_bound: float = 10.0
    irr_tolerance: float = 1e-10
    irr_max_iterations: int = 100

    # Sensitivity analysis
    sensitivity_max_workers: int = 4
    sensitivity_max_points: int = 100

    # Underwriting defaults
    default_selling_cost_rate: float = 0.02

    class Config:
        env_file = get_env_file()
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
