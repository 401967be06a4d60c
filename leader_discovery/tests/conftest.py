"""
leader_discovery test configuration.

All tests run against MockCoordinationClient and httpx.MockTransport. No
ZooKeeper ensemble or network is required.
"""
from __future__ import annotations

import os

import pytest

# ── Quiet, deterministic defaults ──────────────────────────────────────────
# These must be set before any leader_discovery modules are imported.

os.environ.setdefault("LEADER_DISCOVERY_LOG_LEVEL", "WARNING")
os.environ.setdefault("LEADER_DISCOVERY_LOG_FORMAT", "console")
os.environ.setdefault("APP_ENV", "test")

ELECTION_PATH = "/aurora/scheduler"


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_config():
    """Each test sees config rebuilt from the current environment."""
    from leader_discovery.tier0_core.config import _reset_config

    _reset_config()
    yield
    _reset_config()


@pytest.fixture
def fast_config():
    """Config with a short refresh interval so watcher tests finish quickly."""
    from leader_discovery.tier0_core.config import load_config

    return load_config(refresh_interval=0.02, connect_timeout=1.0, probe_timeout=1.0)


@pytest.fixture
def zk_client():
    """A started MockCoordinationClient with an empty election directory."""
    from leader_discovery.tier3_platform.coordination import MockCoordinationClient

    client = MockCoordinationClient()
    client.ensure_path(ELECTION_PATH)
    client.start()
    yield client
    client.stop()
