"""
Application configuration.

All settings are loaded from environment variables (or a local .env file).
No defaults for secrets. The mailbox access token is supplied by whatever
process owns the OAuth flow; this service only reads it and never refreshes it.

Components do not read settings on their own. The application factory in
main.py pulls values from here and passes them into constructors, so tests
can build isolated pipelines without touching the environment.

Usage:
    from mailpilot.config import get_settings
    settings = get_settings()
    print(settings.poll_interval_seconds)
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Mailbox / Microsoft Graph ---
    mailbox_access_token: str = Field(description="Bearer token for the monitored mailbox")
    mailbox_owner_address: Optional[str] = Field(
        default=None,
        description="Address of the monitored mailbox. Looked up from /me when unset.",
    )
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    fetch_limit: int = Field(default=20, ge=1, le=1000)
    unread_fallback: Literal["empty", "all"] = Field(
        default="empty",
        description="What list_unread returns when nothing is unread",
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # --- Mailbox rate limiting ---
    rate_limit_requests: int = Field(default=30, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_concurrency: int = Field(default=4, ge=1)

    # --- Classifier ---
    classifier_backend: Literal["llm", "keyword"] = Field(default="llm")
    anthropic_api_key: str = Field(default="", description="Required when classifier_backend=llm")
    anthropic_model: str = Field(default="claude-sonnet-4-20250514")
    anthropic_max_tokens_classify: int = Field(default=600)
    anthropic_max_tokens_batch: int = Field(default=2000)
    llm_max_retries: int = Field(default=3, ge=1)
    llm_timeout_seconds: float = Field(default=60.0, gt=0)

    # --- Institution context for replies ---
    institution_name: str = Field(default="Admissions Office")
    institution_instructions: str = Field(default="")
    knowledge_base_path: Optional[str] = Field(default=None)
    knowledge_base_max_chars: int = Field(default=4000)
    reply_footer: str = Field(
        default="This is an automated response. A member of our team will follow up if needed."
    )

    # --- Polling and batching ---
    poll_interval_seconds: float = Field(default=120.0, gt=0)
    batch_size: int = Field(default=1, ge=1)
    batch_delay_seconds: float = Field(default=300.0, ge=0)
    adaptive_polling: bool = Field(default=True)
    max_poll_interval_seconds: float = Field(default=900.0, gt=0)
    empty_checks_before_backoff: int = Field(default=10, ge=1)
    autostart_poller: bool = Field(default=False)

    # --- Storage / rules ---
    database_url: str = Field(default="sqlite:///data/mailpilot.db")
    rules_config_path: str = Field(default="config/rules.yaml")

    # --- Operator API ---
    operator_api_key: str = Field(description="Shared secret for the operator API")

    # --- App ---
    app_name: str = Field(default="Mailpilot")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="info")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()
