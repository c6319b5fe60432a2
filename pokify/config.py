"""
Configuration management for the Pokify product import service.
Handles environment variables and application settings.
"""
import os
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Config:
    """Application configuration loaded from environment variables."""

    # Server settings
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))
    DEBUG: bool = _env_bool("DEBUG")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

    # Relational store (Postgres in production, SQLite locally)
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./pokify.db")

    # Linkfy text-extraction API
    # Tokens are loaded from environment variables, NEVER hardcoded
    LINKFY_API_URL: str = os.getenv(
        "LINKFY_API_URL", "https://api.linkfy.io/api/text/extract-web-info"
    )
    LINKFY_API_TOKEN: Optional[str] = os.getenv("LINKFY_API_TOKEN")
    LINKFY_LEGACY_API_TOKEN: Optional[str] = os.getenv("LINKFY_LEGACY_API_TOKEN")

    # Extraction pipeline
    USE_NEW_EXTRACTOR: bool = _env_bool("USE_NEW_EXTRACTOR")
    EXTRACTION_BUDGET_SECONDS: float = float(os.getenv("EXTRACTION_BUDGET_SECONDS", "90"))
    SCREENSHOT_MAX_CONTEXTS: int = int(os.getenv("SCREENSHOT_MAX_CONTEXTS", "2"))
    JOB_WORKERS: int = int(os.getenv("JOB_WORKERS", "2"))

    # Claude API (vision extraction and copy generation)
    CLAUDE_API_KEY: Optional[str] = os.getenv("CLAUDE_API_KEY")

    # Shopify Admin REST API
    SHOPIFY_API_VERSION: str = os.getenv("SHOPIFY_API_VERSION", "2025-01")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")  # json or console

    # Request settings
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", "30"))

    @classmethod
    def is_llm_configured(cls) -> bool:
        """Check if the Claude API key is configured."""
        return bool(cls.CLAUDE_API_KEY)

    @classmethod
    def is_linkfy_configured(cls) -> bool:
        """Check if at least one Linkfy token is configured."""
        return bool(cls.LINKFY_API_TOKEN or cls.LINKFY_LEGACY_API_TOKEN)

    @classmethod
    def get_missing_vars(cls) -> list:
        """Return list of missing optional integration variables."""
        missing = []
        if not cls.CLAUDE_API_KEY:
            missing.append("CLAUDE_API_KEY")
        if not cls.LINKFY_API_TOKEN:
            missing.append("LINKFY_API_TOKEN")
        if not cls.LINKFY_LEGACY_API_TOKEN:
            missing.append("LINKFY_LEGACY_API_TOKEN")
        return missing


config = Config()
