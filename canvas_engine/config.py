from typing import Optional
import os

from pydantic import BaseModel, Field


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class Settings(BaseModel):
    """Runtime settings for the canvas engine, read from CANVAS_* variables"""

    service_name: str = Field(default_factory=lambda: os.getenv("CANVAS_SERVICE_NAME", "canvas-engine"))
    log_level: str = Field(default_factory=lambda: os.getenv("CANVAS_LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("CANVAS_LOG_FORMAT", "json"))

    # History
    history_limit: int = Field(default_factory=lambda: int(os.getenv("CANVAS_HISTORY_LIMIT", "50")))
    history_debounce_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CANVAS_HISTORY_DEBOUNCE", "0.5"))
    )
    stale_check_debounce_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CANVAS_STALE_CHECK_DEBOUNCE", "0.5"))
    )

    # Fingerprinting. The ancestor limit only bounds the walk; it carries no meaning.
    fingerprint_ancestor_limit: int = Field(
        default_factory=lambda: int(os.getenv("CANVAS_FINGERPRINT_ANCESTOR_LIMIT", "20"))
    )
    fingerprint_prefix_chars: int = Field(
        default_factory=lambda: int(os.getenv("CANVAS_FINGERPRINT_PREFIX_CHARS", "300"))
    )

    # Context assembly / generation
    context_ancestor_limit: int = Field(
        default_factory=lambda: int(os.getenv("CANVAS_CONTEXT_ANCESTOR_LIMIT", "500"))
    )
    use_summarization: bool = Field(default_factory=lambda: _env_bool("CANVAS_USE_SUMMARIZATION", "true"))
    summary_fallback_chars: int = Field(
        default_factory=lambda: int(os.getenv("CANVAS_SUMMARY_FALLBACK_CHARS", "200"))
    )
    system_prompt: str = Field(default_factory=lambda: os.getenv("CANVAS_SYSTEM_PROMPT", ""))

    timer_interval_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CANVAS_TIMER_INTERVAL", "0.1"))
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use"""

    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
