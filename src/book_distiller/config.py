"""Runtime configuration for distillation runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from book_distiller.distiller.prompts import DEFAULT_PROMPT

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


@dataclass(slots=True)
class GenerationSettings:
    """Model selection and sampling settings."""

    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    seed_prompt: str = DEFAULT_PROMPT
    streaming: bool = True


@dataclass(slots=True)
class RetrySettings:
    """Per-turn retry budget and backoff policy."""

    max_attempts: int = 5
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    jitter_max_seconds: float = 1.0


@dataclass(slots=True)
class GeminiSettings:
    """Remote Gemini REST endpoint settings."""

    api_base: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    poll_interval_seconds: float = 3.0
    max_poll_seconds: float = 1_800.0
    request_timeout_seconds: float = 120.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".book_distiller.db")
    api_key: str | None = None
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    gemini: GeminiSettings = field(default_factory=GeminiSettings)
    prompt_history_limit: int = 20

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("BOOK_DISTILLER_DB_PATH", ".book_distiller.db")),
            api_key=_env_str("BOOK_DISTILLER_API_KEY") or _env_str("GEMINI_API_KEY"),
            generation=GenerationSettings(
                model=os.getenv("BOOK_DISTILLER_MODEL", DEFAULT_MODEL),
                temperature=float(
                    os.getenv("BOOK_DISTILLER_TEMPERATURE", str(DEFAULT_TEMPERATURE)),
                ),
                seed_prompt=_env_prompt() or DEFAULT_PROMPT,
                streaming=_env_bool("BOOK_DISTILLER_STREAMING", default=True),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("BOOK_DISTILLER_RETRY_MAX_ATTEMPTS", "5")),
                base_delay_seconds=float(
                    os.getenv("BOOK_DISTILLER_RETRY_BASE_DELAY_SECONDS", "5.0"),
                ),
                max_delay_seconds=float(
                    os.getenv("BOOK_DISTILLER_RETRY_MAX_DELAY_SECONDS", "60.0"),
                ),
                jitter_max_seconds=float(
                    os.getenv("BOOK_DISTILLER_RETRY_JITTER_MAX_SECONDS", "1.0"),
                ),
            ),
            gemini=GeminiSettings(
                api_base=os.getenv(
                    "BOOK_DISTILLER_GEMINI_API_BASE",
                    "https://generativelanguage.googleapis.com",
                ),
                api_version=os.getenv("BOOK_DISTILLER_GEMINI_API_VERSION", "v1beta"),
                poll_interval_seconds=float(
                    os.getenv("BOOK_DISTILLER_GEMINI_POLL_INTERVAL_SECONDS", "3.0"),
                ),
                max_poll_seconds=float(
                    os.getenv("BOOK_DISTILLER_GEMINI_MAX_POLL_SECONDS", "1800"),
                ),
                request_timeout_seconds=float(
                    os.getenv("BOOK_DISTILLER_GEMINI_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
            ),
            prompt_history_limit=int(os.getenv("BOOK_DISTILLER_PROMPT_HISTORY_LIMIT", "20")),
        )

    def validate_for_run(self) -> None:
        """Raise configuration error if run settings are out of range."""

        validate_temperature(self.generation.temperature)
        if not self.generation.model.strip():
            raise ValueError("BOOK_DISTILLER_MODEL must not be empty.")
        if self.retry.max_attempts <= 0:
            raise ValueError("BOOK_DISTILLER_RETRY_MAX_ATTEMPTS must be a positive integer.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("BOOK_DISTILLER_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "BOOK_DISTILLER_RETRY_MAX_DELAY_SECONDS must be >= the base delay.",
            )
        if self.retry.jitter_max_seconds < 0:
            raise ValueError("BOOK_DISTILLER_RETRY_JITTER_MAX_SECONDS must be >= 0.")
        if self.gemini.poll_interval_seconds <= 0:
            raise ValueError("BOOK_DISTILLER_GEMINI_POLL_INTERVAL_SECONDS must be > 0.")
        if self.prompt_history_limit <= 0:
            raise ValueError("BOOK_DISTILLER_PROMPT_HISTORY_LIMIT must be a positive integer.")
        _validate_api_base(self.gemini.api_base)


def validate_temperature(value: float) -> float:
    """Return ``value`` if it is a valid sampling temperature."""

    if not MIN_TEMPERATURE <= value <= MAX_TEMPERATURE:
        raise ValueError(
            f"Temperature must be between {MIN_TEMPERATURE} and {MAX_TEMPERATURE}, got {value!r}.",
        )
    return value


def _validate_api_base(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid Gemini API base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_prompt() -> str | None:
    inline = _env_str("BOOK_DISTILLER_SEED_PROMPT")
    if inline:
        return inline
    prompt_file = _env_str("BOOK_DISTILLER_SEED_PROMPT_FILE")
    if prompt_file:
        return Path(prompt_file).read_text("utf-8")
    return None


def _env_str(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
