"""
leader_discovery.tier0_core.errors
───────────────────────────────────
Error taxonomy for leader discovery. Every error carries a stable
machine-readable code so callers can branch on it without string matching.

Construction errors (bad address, unreachable ensemble) propagate to the
caller of ``resolve()``. Refresh-loop errors (decode, watch interruption)
are logged by the watcher and never reach callers.
"""
from __future__ import annotations

from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class FinderError(Exception):
    """
    Base class for all leader discovery errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - message: human-readable description
    - metadata: structured context, suitable for log fields
    """

    code: str = "finder_error"

    def __init__(self, message: str = "Leader discovery failed.", **metadata: Any) -> None:
        self.message = message
        self.metadata = metadata
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                **self.metadata,
            }
        }


# ── Typed error classes ───────────────────────────────────────────────────────

class ConfigurationError(FinderError):
    """Malformed address or settings detected at construction."""
    code = "configuration_error"


class CoordinationConnectionError(FinderError):
    """The coordination ensemble could not be reached at construction."""
    code = "connection_error"


class ResolutionError(FinderError):
    """No leader is known, or the lookup failed. Per query, never fatal."""
    code = "resolution_error"


class NotFoundError(ResolutionError):
    """The election directory holds no member node."""
    code = "not_found"


class DecodeError(FinderError):
    """Leader advertisement payload is malformed or the SOH placeholder."""
    code = "decode_error"


class WatchInterruptedError(FinderError):
    """The one-shot watch ended; the leader node must be located again."""
    code = "watch_interrupted"


__all__ = [
    "FinderError",
    "ConfigurationError",
    "CoordinationConnectionError",
    "ResolutionError",
    "NotFoundError",
    "DecodeError",
    "WatchInterruptedError",
]
