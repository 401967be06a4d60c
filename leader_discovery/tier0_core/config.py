"""
leader_discovery.tier0_core.config
───────────────────────────────────
Typed configuration with env layering. Reads from .env → environment
variables. All fields are typed via Pydantic; invalid values raise
ConfigurationError when the config is first loaded.

Minimal stack: pydantic-settings + python-dotenv
Env prefix:    LEADER_DISCOVERY_
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from leader_discovery.tier0_core.errors import ConfigurationError

DEFAULT_ELECTION_PATH = "/aurora/scheduler"


class FinderConfig(BaseSettings):
    """
    Polling cadence, timeouts and staleness bound for leader discovery.
    Every field can be overridden with LEADER_DISCOVERY_<FIELD>.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEADER_DISCOVERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Coordination service ──────────────────────────────────────────────────
    election_path: str = DEFAULT_ELECTION_PATH
    refresh_interval: float = Field(default=1.0, gt=0)
    connect_timeout: float = Field(default=20.0, gt=0)

    # 0 disables the staleness bound.
    max_staleness: float = Field(default=30.0, ge=0)

    # ── HTTP probe ────────────────────────────────────────────────────────────
    probe_timeout: float = Field(default=10.0, gt=0)

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("election_path")
    @classmethod
    def validate_election_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"election_path must be absolute, got {v!r}")
        return v.rstrip("/") or "/"

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = {"json", "console"}
        if v.lower() not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v.lower()


def load_config(**overrides: object) -> FinderConfig:
    """Build a FinderConfig, mapping pydantic failures to ConfigurationError."""
    try:
        return FinderConfig(**overrides)
    except PydanticValidationError as exc:
        fields = {
            ".".join(str(loc) for loc in err["loc"]): err["msg"]
            for err in exc.errors()
        }
        raise ConfigurationError("invalid finder configuration", fields=fields) from exc


@lru_cache(maxsize=1)
def get_config() -> FinderConfig:
    """
    Return the singleton finder config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return load_config()


def _reset_config() -> None:
    """For tests: clear the config cache."""
    get_config.cache_clear()


__all__ = ["DEFAULT_ELECTION_PATH", "FinderConfig", "get_config", "load_config"]
