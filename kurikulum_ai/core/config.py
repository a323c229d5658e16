import re

from pydantic_settings import BaseSettings, SettingsConfigDict

_KEY_SPLIT = re.compile(r"[,\n\s]+")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Gemini credentials. GEMINI_API_KEYS is a comma/whitespace/newline separated list
    gemini_api_keys: str = ""
    gemini_api_key: str = ""  # single-key fallback

    @property
    def gemini_keys(self) -> list[str]:
        """Parsed credential list (GEMINI_API_KEYS, falling back to GEMINI_API_KEY)."""
        raw = self.gemini_api_keys or self.gemini_api_key
        return [k for k in _KEY_SPLIT.split(raw) if k]

    gemini_timeout_seconds: float = 120.0

    # Redis: shared ban flags and per-key token counters; empty disables
    redis_url: str = ""

    # Per-key token window (shared across instances via Redis)
    gemini_key_window_seconds: int = 60
    gemini_key_rpm: int = 15
    gemini_key_ban_ms: int = 2 * 60 * 1000

    # In-process pacing
    max_requests_per_minute: int = 15
    inter_call_delay_ms: int = 500

    # Quota monitor
    quota_cooldown_seconds: float = 120.0

    # HTTP rate limit for generate endpoints (slowapi syntax)
    generate_rate_limit: str = "5/minute"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if not settings.gemini_keys:
        errors.append("GEMINI_API_KEYS (or GEMINI_API_KEY) must contain at least one key")

    if settings.gemini_key_rpm < 1:
        errors.append("GEMINI_KEY_RPM must be >= 1")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
