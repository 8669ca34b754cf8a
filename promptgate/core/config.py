from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    # Command-line backends
    cursor_executable: str = "cursor"
    cursor_default_model: str = "sonnet-4.5"
    claude_executable: str = "claude"
    claude_default_model: str = "claude-sonnet-4-5-20250929"
    process_read_chunk_size: int = 4096
    process_terminate_grace_seconds: float = 2.0

    # Streaming HTTP backend (Gemini family)
    gemini_api_key: str = Field("", validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY"))
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_default_model: str = "gemini-3-flash-preview"
    google_cloud_project: str = ""
    http_connect_timeout: float = 10.0  # connection establishment only, reads are unbounded

    # Credential helper
    credential_helper_executable: str = "gcloud"
    prefer_credential_helper: bool = True
    token_lifetime_seconds: int = 3600
    token_refresh_buffer_seconds: int = 300
    token_revalidate_seconds: int = 600

    # Fallback chains, merged over the built-in table.
    # FALLBACK_CHAINS='{"gemini-2.5-flash": ["gemini-2.5-flash", "gemini-2.5-pro"]}'
    fallback_chains: dict[str, list[str]] = {}

    # App
    app_env: str = "development"
    app_debug: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    from promptgate.gateway.fallback import build_fallback_table

    errors: list[str] = []

    try:
        build_fallback_table(settings.fallback_chains)
    except ValueError as e:
        errors.append(f"FALLBACK_CHAINS is invalid: {e}")

    if settings.process_read_chunk_size <= 0:
        errors.append("PROCESS_READ_CHUNK_SIZE must be positive")

    if settings.token_refresh_buffer_seconds >= settings.token_lifetime_seconds:
        errors.append("TOKEN_REFRESH_BUFFER_SECONDS must be smaller than TOKEN_LIFETIME_SECONDS")

    if settings.app_env == "production":
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.gemini_api_key and not settings.prefer_credential_helper:
            errors.append("GEMINI_API_KEY must be set when the credential helper is disabled")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
