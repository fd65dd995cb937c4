"""Configuration management for the docsearch MCP server."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """docsearch MCP server settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    server_name: str = "fast-api-search-mcp"

    # AI Search (AutoRAG) backend
    cloudflare_account_id: str | None = None
    cloudflare_api_token: str | None = None
    ai_search_base_url: str = "https://api.cloudflare.com/client/v4"
    ai_search_instance: str = "ai-search-fast_api_search"
    ai_search_timeout_secs: float = 30.0

    # Ledger persistence; None keeps balances in process memory
    ledger_database_path: str | None = None
    seed_balances: str | None = None  # JSON: {"user-id": credits}

    debit_max_attempts: int = 3
    debit_backoff_base_secs: float = 0.1

    max_output_chars: int = 10_000
    redact_emails: bool = False

    identity_header: str = "fastmcp-cloud-user"
    dev_user_id: str | None = None  # STDIO only

    log_level: str = "INFO"


def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
