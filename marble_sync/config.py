"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - Every tunable comes from environment variables or .env (never hardcoded at call sites)
    - get_settings() is cached (lru_cache) — single instance per process

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for every setting: works out-of-the-box against a local editor server
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync core settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Remote store
    remote_base_url: str = "http://localhost:3000"

    @field_validator("remote_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Paths are joined as /api/...; a trailing slash would double it."""
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    remote_timeout_seconds: float = 30.0
    remote_keepalive_timeout_seconds: float = 5.0
    remote_max_retries: int = 3
    remote_base_delay_ms: int = 500
    remote_max_delay_ms: int = 10_000

    # Autosave
    autosave_delay_ms: int = 1700
    autosave_min_delay_ms: int = 250

    # Working memory defaults (user settings override at runtime)
    working_memory_history_length: int = 20
    working_memory_include_project_structure: bool = True
    working_memory_include_context: bool = True
    working_memory_include_working_history: bool = True
    working_memory_auto_refresh_interval: int = 0

    # Bridge
    cors_origins: list[str] = ["http://localhost:5173"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    def working_memory_defaults(self) -> dict:
        """Default working-memory config block derived from settings."""
        return {
            "history_length": self.working_memory_history_length,
            "include_project_structure": self.working_memory_include_project_structure,
            "include_context": self.working_memory_include_context,
            "include_working_history": self.working_memory_include_working_history,
            "auto_refresh_interval": self.working_memory_auto_refresh_interval,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
