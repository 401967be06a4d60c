"""
leader_discovery
────────────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from leader_discovery.tier0_core.logging import get_logger
from leader_discovery.tier0_core.errors import (
    FinderError,
    ConfigurationError,
    CoordinationConnectionError,
    ResolutionError,
    NotFoundError,
    DecodeError,
    WatchInterruptedError,
)
from leader_discovery.tier0_core.config import get_config, FinderConfig

from leader_discovery.tier1_runtime.retry import retry_policy, wait_for_leader

from leader_discovery.tier2_reliability.cache import LeaderAddress, LeaderCache

from leader_discovery.tier3_platform.election import (
    LeaderAdvertisement,
    decode_advertisement,
    select_leader_node,
)
from leader_discovery.tier3_platform.coordination import (
    CoordinationClient,
    CoordinationWatcher,
    MockCoordinationClient,
)
from leader_discovery.tier3_platform.discovery import (
    Finder,
    HttpProbeFinder,
    ZooKeeperFinder,
    resolve,
)

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "FinderError", "ConfigurationError", "CoordinationConnectionError",
    "ResolutionError", "NotFoundError", "DecodeError", "WatchInterruptedError",
    # config
    "get_config", "FinderConfig",
    # retry
    "retry_policy", "wait_for_leader",
    # cache
    "LeaderAddress", "LeaderCache",
    # election
    "LeaderAdvertisement", "decode_advertisement", "select_leader_node",
    # coordination
    "CoordinationClient", "CoordinationWatcher", "MockCoordinationClient",
    # discovery
    "Finder", "HttpProbeFinder", "ZooKeeperFinder", "resolve",
]
