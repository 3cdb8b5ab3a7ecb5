"""Server configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(
        default="sqlite:///./invoices.db",
        description="Database connection URL",
    )

    # Approval links
    public_origin: str = Field(
        default="http://localhost:5173",
        description="Origin the client opens approval links on",
    )
    approval_token_bytes: int = Field(
        default=16,
        ge=16,
        description="Random bytes in each approval token",
    )

    # EmailJS
    emailjs_service_id: Optional[str] = Field(default=None, description="EmailJS service id")
    emailjs_template_id: Optional[str] = Field(default=None, description="EmailJS template id")
    emailjs_public_key: Optional[str] = Field(default=None, description="EmailJS public key")
    emailjs_api_url: str = Field(
        default="https://api.emailjs.com",
        description="EmailJS API origin",
    )

    # ClickUp
    clickup_client_id: Optional[str] = Field(default=None, description="ClickUp OAuth client id")
    clickup_client_secret: Optional[str] = Field(
        default=None,
        description="ClickUp OAuth client secret",
    )
    clickup_api_url: str = Field(
        default="https://api.clickup.com/api/v2",
        description="ClickUp API base URL",
    )

    http_timeout: float = Field(default=30.0, description="Outbound HTTP timeout in seconds")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
