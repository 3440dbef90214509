"""Application configuration settings."""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Runtime settings read from the environment."""

    # Storage; empty means the in-memory store
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    database_echo: bool = field(default_factory=lambda: _env_bool("DATABASE_ECHO"))

    # Auth
    jwt_secret: str = field(
        default_factory=lambda: os.getenv("AUTH_JWT_SECRET", "dev-secret-change-me")
    )
    jwt_audience: str = field(
        default_factory=lambda: os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
    )

    # Rate limiting
    rate_limit_requests: int = field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_REQUESTS", "60"))
    )
    rate_limit_window_seconds: int = field(
        default_factory=lambda: int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    )
    rate_limit_redis_url: str = field(
        default_factory=lambda: os.getenv("RATE_LIMIT_REDIS_URL", "")
    )

    # Messaging
    max_message_length: int = field(
        default_factory=lambda: int(os.getenv("MAX_MESSAGE_LENGTH", "5000"))
    )

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = field(default_factory=lambda: _env_bool("LOG_JSON"))

    cors_origins: List[str] = field(
        default_factory=lambda: [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]
    )


_settings = None


def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
