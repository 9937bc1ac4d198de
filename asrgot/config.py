"""Configuration for ASR-GoT sessions.

Settings load from environment variables (and an optional ``.env`` file).
They are constructed explicitly and passed into each session; nothing here
is cached process-wide.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from asrgot.errors import CredentialError


class AsrGotSettings(BaseSettings):
    """Runtime settings.

    Every field can be set by its environment alias or, in code, by field
    name (``AsrGotSettings(auto_advance_delay=0)``).
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    perplexity_api_key: str | None = Field(default=None, alias="PERPLEXITY_API_KEY")

    request_timeout: float = Field(
        default=120.0,
        gt=0,
        alias="ASRGOT_REQUEST_TIMEOUT",
        description="Seconds before an external call falls back to the default capability",
    )
    auto_advance_delay: float = Field(
        default=1.0,
        ge=0,
        alias="ASRGOT_AUTO_ADVANCE_DELAY",
        description="Display delay before auto mode schedules the next stage",
    )
    sessions_dir: Path = Field(default=Path("sessions"), alias="ASRGOT_SESSIONS_DIR")
    log_level: str = Field(default="INFO", alias="ASRGOT_LOG_LEVEL")

    cache_ttl_minutes: int = Field(default=1440, ge=0, alias="ASRGOT_CACHE_TTL_MINUTES")
    cache_threshold_chars: int = Field(default=200_000, gt=0, alias="ASRGOT_CACHE_THRESHOLD")

    prune_threshold: float = Field(default=0.4, ge=0, le=1, alias="ASRGOT_PRUNE_THRESHOLD")
    subgraph_min_confidence: float = Field(default=0.5, ge=0, le=1, alias="ASRGOT_SUBGRAPH_MIN")
    max_subgraphs: int = Field(default=10, gt=0, alias="ASRGOT_MAX_SUBGRAPHS")


class Credentials(BaseModel):
    """Named API keys available to a session."""

    gemini: str | None = None
    perplexity: str | None = None

    @classmethod
    def from_settings(cls, settings: AsrGotSettings) -> Credentials:
        return cls(gemini=settings.gemini_api_key, perplexity=settings.perplexity_api_key)

    def has(self, name: str) -> bool:
        value = getattr(self, name, None)
        return bool(value and value.strip())

    def require(self, name: str) -> str:
        """Return the key named ``name``.

        Raises:
            CredentialError: With code ``{NAME}_KEY_REQUIRED`` if absent
        """
        if not self.has(name):
            code = f"{name.upper()}_KEY_REQUIRED"
            raise CredentialError(code, f"{code}: no {name} API key is configured")
        return getattr(self, name)
