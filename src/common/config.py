"""Centralized configuration management using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Base settings shared across all services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # LLM Providers
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Search
    google_search_api_key: str = ""
    google_search_cx: str = ""

    # Application
    log_level: str = "INFO"
    environment: str = "development"
