"""
leader_discovery.tier3_platform.discovery
──────────────────────────────────────────
Leader endpoint resolution. Translates a discovery address into "the URL of
whoever is leader right now", using one of two strategies picked once from
the address scheme:

  - http(s)://host[:port]        HTTP redirect probe against /scheduler
  - zk://host1:port1,host2:port2 ZooKeeper election directory watch

Usage:
    finder = resolve("zk://zk1:2181,zk2:2181", "/aurora/scheduler")
    url = finder.leader_url()      # → "http://10.0.0.1:8081"
    finder.close()
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx
from kazoo.client import KazooClient

from leader_discovery.tier0_core.config import FinderConfig, get_config
from leader_discovery.tier0_core.errors import ConfigurationError, CoordinationConnectionError, ResolutionError
from leader_discovery.tier0_core.logging import get_logger
from leader_discovery.tier0_core.metrics import probe_total
from leader_discovery.tier1_runtime.clock import Clock
from leader_discovery.tier2_reliability.cache import LeaderCache
from leader_discovery.tier3_platform.coordination import CoordinationClient, CoordinationWatcher
from leader_discovery.tier3_platform.election import ZK_SCHEME, connection_string, parse_ensemble

logger = get_logger(__name__)

HTTP_SCHEMES = ("http://", "https://")
SCHEDULER_PATH = "/scheduler"


@runtime_checkable
class Finder(Protocol):
    def leader_url(self) -> str: ...
    def close(self) -> None: ...


class HttpProbeFinder:
    """
    Probe a stable endpoint that redirects to the elected leader.
    Every leader_url() call is one GET; nothing is cached.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, follow_redirects=False, transport=transport)

    @property
    def url(self) -> str:
        return self._url

    def leader_url(self) -> str:
        # The virtual endpoint redirects us to the elected leader.
        scheduler_url = f"{self._url}{SCHEDULER_PATH}"
        try:
            response = self._client.get(scheduler_url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            probe_total(outcome="failed").inc()
            raise ResolutionError(
                f"leader probe failed: {exc}", url=scheduler_url
            ) from exc

        location = response.headers.get("location")
        if not location:
            # No redirect: we are already talking to the leader.
            probe_total(outcome="no_location").inc()
            logger.debug("probe.no_location", url=scheduler_url, status=response.status_code)
            return scheduler_url

        probe_total(outcome="redirected").inc()
        return location.removesuffix(SCHEDULER_PATH)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpProbeFinder":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class ZooKeeperFinder:
    """
    Serve leader_url() from a cache that a CoordinationWatcher keeps fresh.
    Queries never touch the network.
    """

    def __init__(
        self,
        client: CoordinationClient,
        election_path: str,
        *,
        refresh_interval: float = 1.0,
        max_staleness: float = 30.0,
        clock: Clock | None = None,
    ) -> None:
        self._client = client
        self._cache = LeaderCache(clock=clock)
        self._max_staleness = max_staleness
        self._watcher = CoordinationWatcher(
            client, election_path, self._cache, refresh_interval=refresh_interval
        )

    @property
    def watcher(self) -> CoordinationWatcher:
        return self._watcher

    def start(self) -> None:
        self._watcher.start()

    def leader_url(self) -> str:
        address, age = self._cache.snapshot()
        if address is None:
            raise ResolutionError(
                "no leader found", election_path=self._watcher.election_path
            )
        if self._max_staleness and age is not None and age > self._max_staleness:
            raise ResolutionError(
                "leader information is stale",
                election_path=self._watcher.election_path,
                age=round(age, 3),
            )
        return address.url

    def close(self) -> None:
        self._watcher.stop()
        self._client.stop()
        self._client.close()

    def __enter__(self) -> "ZooKeeperFinder":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def resolve(
    address: str,
    election_path: str | None = None,
    *,
    config: FinderConfig | None = None,
    client: CoordinationClient | None = None,
    transport: httpx.BaseTransport | None = None,
    clock: Clock | None = None,
) -> Finder:
    """
    Build the finder matching *address*.

    A zk:// address connects to the ensemble (bounded by connect_timeout)
    and starts the watcher thread before returning; it does not wait for a
    leader to be found.

    Raises:
        ConfigurationError:          unknown scheme or malformed ensemble.
        CoordinationConnectionError: the ensemble could not be reached.
    """
    cfg = config or get_config()

    if address.startswith(HTTP_SCHEMES):
        return HttpProbeFinder(address, timeout=cfg.probe_timeout, transport=transport)

    if not address.startswith(ZK_SCHEME):
        raise ConfigurationError("bad address", address=address)

    hosts = connection_string(parse_ensemble(address))
    path = election_path or cfg.election_path
    if not path.startswith("/"):
        raise ConfigurationError("election path must be absolute", election_path=path)
    if client is None:
        client = KazooClient(hosts=hosts)

    try:
        client.start(timeout=cfg.connect_timeout)
    except Exception as exc:
        client.stop()
        client.close()
        raise CoordinationConnectionError(
            f"cannot connect to coordination ensemble: {exc}", hosts=hosts
        ) from exc

    logger.info("zk.connected", hosts=hosts, election_path=path)
    finder = ZooKeeperFinder(
        client,
        path,
        refresh_interval=cfg.refresh_interval,
        max_staleness=cfg.max_staleness,
        clock=clock,
    )
    finder.start()
    return finder


__all__ = ["Finder", "HttpProbeFinder", "ZooKeeperFinder", "resolve"]
