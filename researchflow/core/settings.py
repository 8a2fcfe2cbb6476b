"""Researchflow settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.  The field name is the
lowercase version of the env-var name (``OPENAI_API_KEY`` →
``openai_api_key``).

Per-stage cache TTL overrides (``STAGE1_CACHE_TTL_MINUTES``,
``AI_CACHE_TTL_MINUTES`` …) are intentionally *not* fields here: their names
are derived from the cache scope at call time, see
:func:`researchflow.storage.cache.resolve_cache_ttl_minutes`.

Typical usage::

    from researchflow.core.settings import Settings

    settings = Settings()                       # loads from env + .env
    print(settings.automation_configured)       # True / False
    key = settings.api_key_for("openrouter")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    Provider keys may be left empty during development; stages whose model
    resolves to an unconfigured provider fail fast with a
    :class:`~researchflow.core.exceptions.ConfigError` before touching any
    item.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/researchflow.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # LLM providers
    # ------------------------------------------------------------------
    openai_api_key: str = Field(default="", description="OpenAI API key.")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key.")
    openai_base_url: str = Field(
        default="",
        description="Override for the OpenAI-compatible base URL (empty = provider default).",
    )
    openrouter_referer: str = Field(
        default="https://researchflow.local",
        description="HTTP-Referer header sent to OpenRouter.",
    )
    openrouter_title: str = Field(
        default="researchflow",
        description="X-Title header sent to OpenRouter.",
    )
    provider_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Per-call read timeout for chat completions.",
    )

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------
    automation_service_secret: str = Field(
        default="",
        description="Shared secret required for scheduled dispatch and operator CLI calls.",
    )
    claim_timeout_seconds: int = Field(
        default=900,
        ge=60,
        description="Age after which an in_progress claim is considered abandoned.",
    )
    dispatch_interval_seconds: int = Field(
        default=60,
        ge=5,
        description="Sleep between dispatch passes in --loop mode.",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Root logger level."
    )
    log_format: Literal["text", "json"] = Field(
        default="text", description="Plain text lines or one JSON document per record."
    )

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("automation_service_secret", "openai_api_key", "openrouter_api_key")
    @classmethod
    def _strip_secret(cls, v: str) -> str:
        return v.strip()

    @field_validator("openai_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("log_level", "log_format", mode="before")
    @classmethod
    def _normalise_log_option(cls, v: object, info: ValidationInfo) -> object:
        if not isinstance(v, str):
            return v
        return v.strip().upper() if info.field_name == "log_level" else v.strip().lower()

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()

    @property
    def automation_configured(self) -> bool:
        """``True`` if the automation service secret is set."""
        return bool(self.automation_service_secret)

    def api_key_for(self, provider: str) -> str:
        """Return the API key for *provider*, or ``""`` when unconfigured.

        OpenRouter falls back to the OpenAI key, matching deployments that
        route every model through a single key.
        """
        if provider == "openrouter":
            return self.openrouter_api_key or self.openai_api_key
        if provider == "openai":
            return self.openai_api_key
        return ""
