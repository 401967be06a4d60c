"""
leader_discovery.tier1_runtime.retry
─────────────────────────────────────
Caller-side retry policy. Finders never retry internally; a caller that
wants to block until a leader is known wraps leader_url() here.
Backed by Tenacity.

Usage:
    @retry_policy(max_wait=0.5, on=[ResolutionError])
    def fetch():
        ...

    url = wait_for_leader(finder, timeout=10.0)
"""
from __future__ import annotations

import functools
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Type

from tenacity import (
    Retrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
    wait_random,
)

from leader_discovery.tier0_core.errors import ResolutionError

if TYPE_CHECKING:
    from leader_discovery.tier3_platform.discovery import Finder

# Errors that are NEVER retried regardless of policy
_NON_RETRYABLE = (
    "leader_discovery.tier0_core.errors.ConfigurationError",
    "leader_discovery.tier0_core.errors.DecodeError",
)


def _is_retryable(exc: BaseException) -> bool:
    """Return True if the exception should be retried."""
    fqn = f"{type(exc).__module__}.{type(exc).__qualname__}"
    return fqn not in _NON_RETRYABLE


def retry_policy(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 10.0,
    jitter: float = 1.0,
    on: list[Type[Exception]] | None = None,
) -> Callable:
    """
    Decorator applying exponential backoff with jitter to a sync callable.

    Args:
        max_attempts: Total number of attempts (including first).
        min_wait:     Minimum wait seconds between retries.
        max_wait:     Maximum wait seconds between retries.
        jitter:       Maximum random seconds added to each wait.
        on:           Specific exception types to retry on. If None, retries
                      on everything except the non-retryable errors.
    """
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if on:
                retry_on = retry_if_exception_type(tuple(on))
            else:
                retry_on = retry_if_exception(_is_retryable)

            for attempt in Retrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(min=min_wait, max=max_wait) + wait_random(0, jitter),
                retry=retry_on,
                reraise=True,
            ):
                with attempt:
                    return fn(*args, **kwargs)

        return wrapper
    return decorator


def wait_for_leader(finder: "Finder", timeout: float = 30.0, interval: float = 0.5) -> str:
    """
    Poll finder.leader_url() until it succeeds or *timeout* seconds pass.
    Re-raises the last ResolutionError on timeout.
    """
    for attempt in Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(ResolutionError),
        reraise=True,
    ):
        with attempt:
            return finder.leader_url()
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["retry_policy", "wait_for_leader"]
