"""
Configuration management using Pydantic Settings.

Every setting can be overridden with an environment variable prefixed with
DOCSCAN_ (e.g. DOCSCAN_OCR_LANGUAGE=deu) or from a .env file.
"""
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DOCSCAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OCR
    ocr_engine: Literal["tesseract", "mistral"] = "tesseract"
    ocr_language: str = "eng"
    tesseract_cmd: str | None = None
    mistral_api_key: str | None = None

    # AI enhancement (client side)
    enhance_url: str = "http://localhost:8888/enhance"
    enhance_enabled: bool = True
    enhance_timeout: float = Field(default=10.0, gt=0)
    enhance_min_length: int = 10

    # Capture
    camera_index: int = 0

    # Export
    jpeg_quality: float = Field(default=0.9, gt=0, le=1)
    export_dir: str = "."

    # Scan history
    database_url: str = "sqlite:///docscan.db"
    history_limit: int = 10
    history_retention_hours: int = 24

    # Enhancement server
    llm_provider: Literal["deepseek", "openai", "anthropic", "gemini"] = "deepseek"
    llm_model: str | None = None
    llm_api_key: str | None = None
    rate_limit_requests: int = 10
    rate_limit_window: float = 60.0
    server_host: str = "127.0.0.1"
    server_port: int = 8888

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded once."""
    return Settings()
