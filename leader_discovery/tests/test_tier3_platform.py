"""Tests for tier3_platform modules (election, coordination, discovery)."""
from __future__ import annotations

import json
import time

import httpx
import pytest
from kazoo.protocol.states import EventType, KazooState, WatchedEvent

from leader_discovery.tier0_core.errors import (
    ConfigurationError,
    CoordinationConnectionError,
    DecodeError,
    NotFoundError,
    ResolutionError,
)
from leader_discovery.tier1_runtime.clock import ManualClock
from leader_discovery.tier1_runtime.retry import wait_for_leader
from leader_discovery.tier2_reliability.cache import LeaderAddress, LeaderCache
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
from leader_discovery.tier3_platform.election import (
    SOH,
    connection_string,
    decode_advertisement,
    parse_ensemble,
    select_leader_node,
)

ELECTION_PATH = "/aurora/scheduler"


def advert(host: str, port: int, status: str = "ALIVE") -> bytes:
    return json.dumps({
        "serviceEndpoint": {"host": host, "port": port},
        "additionalEndpoints": {"http": {"host": host, "port": port}},
        "status": status,
    }).encode()


def eventually(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ── ensemble address ───────────────────────────────────────────────────────

class TestParseEnsemble:
    def test_multiple_members(self):
        assert parse_ensemble("zk://zk1:2181,zk2:2182,10.0.0.3:2181") == [
            ("zk1", 2181), ("zk2", 2182), ("10.0.0.3", 2181),
        ]

    def test_repeated_scheme_tolerated(self):
        assert parse_ensemble("zk://zk1:2181,zk://zk2:2181") == [("zk1", 2181), ("zk2", 2181)]

    @pytest.mark.parametrize("address", [
        "zk://zk1",
        "zk://zk1:2181,zk2:abc",
        "zk://zk1:2181,,zk2:2181",
        "zk://zk1:99999",
        "zk://zk1:2181/chroot",
        "http://zk1:2181",
    ])
    def test_malformed_members_rejected(self, address):
        with pytest.raises(ConfigurationError):
            parse_ensemble(address)

    def test_connection_string(self):
        assert connection_string([("zk1", 2181), ("::1", 2181)]) == "zk1:2181,[::1]:2181"


# ── leader node selection ──────────────────────────────────────────────────

class TestSelectLeaderNode:
    def test_lowest_sequence_wins(self):
        children = ["member_0000000005", "member_0000000002", "member_0000000009"]
        assert select_leader_node(ELECTION_PATH, children) == f"{ELECTION_PATH}/member_0000000002"

    def test_numeric_not_lexical_ordering(self):
        children = ["member_10", "member_9", "member_100"]
        assert select_leader_node(ELECTION_PATH, children) == f"{ELECTION_PATH}/member_9"

    def test_sparse_sequences(self):
        children = ["member_0000000041", "member_0000000007", "member_0000001000"]
        assert select_leader_node(ELECTION_PATH, children).endswith("member_0000000007")

    def test_unrelated_children_ignored(self):
        children = ["lock", "member_0000000003", "config"]
        assert select_leader_node(ELECTION_PATH, children).endswith("member_0000000003")

    def test_sequence_zero(self):
        assert select_leader_node(ELECTION_PATH, ["member_0000000001", "member_0000000000"]).endswith(
            "member_0000000000"
        )

    def test_tie_keeps_first_scanned(self):
        assert select_leader_node(ELECTION_PATH, ["a_member_1", "b_member_1"]).endswith("a_member_1")

    def test_no_members_raises_not_found(self):
        with pytest.raises(NotFoundError, match="no leader node"):
            select_leader_node(ELECTION_PATH, ["lock", "config"])

    def test_empty_directory_raises_not_found(self):
        with pytest.raises(NotFoundError):
            select_leader_node(ELECTION_PATH, [])

    @pytest.mark.parametrize("bad", ["member_abc", "member_", "member_-1", "member_1x"])
    def test_non_numeric_suffix_fails_selection(self, bad):
        with pytest.raises(ResolutionError) as excinfo:
            select_leader_node(ELECTION_PATH, ["member_0000000001", bad])
        assert not isinstance(excinfo.value, NotFoundError)

    def test_trailing_slash_in_path(self):
        assert select_leader_node("/aurora/", ["member_1"]) == "/aurora/member_1"


# ── advertisement decoding ─────────────────────────────────────────────────

class TestDecodeAdvertisement:
    def test_decodes_service_endpoint(self):
        ad = decode_advertisement(advert("10.0.0.1", 8081))
        assert ad.address == LeaderAddress("10.0.0.1", 8081)
        assert ad.status == "ALIVE"
        assert ad.additional_endpoints["http"]["port"] == 8081

    def test_optional_fields_and_unknown_keys(self):
        ad = decode_advertisement(b'{"serviceEndpoint": {"host": "h", "port": 1}, "shard": 3}')
        assert ad.address == LeaderAddress("h", 1)
        assert ad.additional_endpoints is None
        assert ad.status is None

    @pytest.mark.parametrize("payload", [
        b'{"serviceEndpoint": {"host": "10.0.0.1", "port": 8081}, "additionalEndpoints": {"http": {"host": "", "port": 0}}}',
        b'{"serviceEndpoint": {"host": "10.0.0.1", "port": 8081}, "additionalEndpoints": {"http": {"host": "10.0.0.1"}}}',
        b'{"serviceEndpoint": {"host": "10.0.0.1", "port": 8081}, "additionalEndpoints": null}',
        b'{"serviceEndpoint": {"host": "10.0.0.1", "port": 8081}, "status": null}',
    ])
    def test_unused_fields_are_not_validated(self, payload):
        assert decode_advertisement(payload).address == LeaderAddress("10.0.0.1", 8081)

    def test_soh_sentinel_rejected(self):
        with pytest.raises(DecodeError, match="SOH"):
            decode_advertisement(SOH)

    @pytest.mark.parametrize("payload", [
        b"",
        b"not json",
        b"{}",
        b'{"serviceEndpoint": {"host": "", "port": 8081}}',
        b'{"serviceEndpoint": {"host": "h", "port": 70000}}',
        b'{"serviceEndpoint": {"host": "h"}}',
    ])
    def test_malformed_payloads_rejected(self, payload):
        with pytest.raises(DecodeError):
            decode_advertisement(payload)


# ── HTTP redirect ──────────────────────────────────────────────────────────

def _http_finder(handler) -> HttpProbeFinder:
    return HttpProbeFinder("http://vip:8081", transport=httpx.MockTransport(handler))


class TestHttpProbeFinder:
    def test_location_header_is_trimmed(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(307, headers={"Location": "http://leader:1234/scheduler"})

        with _http_finder(handler) as finder:
            assert finder.leader_url() == "http://leader:1234"
        assert len(requests) == 1
        assert str(requests[0].url) == "http://vip:8081/scheduler"
        assert requests[0].method == "GET"

    def test_missing_location_returns_requested_url(self):
        with _http_finder(lambda request: httpx.Response(200)) as finder:
            assert finder.leader_url() == "http://vip:8081/scheduler"

    def test_suffix_trim_is_literal(self):
        def handler(request):
            return httpx.Response(302, headers={"Location": "http://leader:1234/api/scheduler"})

        with _http_finder(handler) as finder:
            assert finder.leader_url() == "http://leader:1234/api"

    def test_non_scheduler_location_unchanged(self):
        def handler(request):
            return httpx.Response(302, headers={"Location": "http://leader:1234/schedulers"})

        with _http_finder(handler) as finder:
            assert finder.leader_url() == "http://leader:1234/schedulers"

    def test_transport_failure_raises_resolution_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _http_finder(handler) as finder:
            with pytest.raises(ResolutionError, match="leader probe failed"):
                finder.leader_url()

    def test_trailing_slash_on_base(self):
        finder = HttpProbeFinder("http://vip:8081/", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        assert finder.leader_url() == "http://vip:8081/scheduler"
        finder.close()


# ── watcher (driven synchronously) ─────────────────────────────────────────

@pytest.fixture
def watcher(zk_client):
    return CoordinationWatcher(zk_client, ELECTION_PATH, LeaderCache(), refresh_interval=0.02)


class TestCoordinationWatcher:
    def test_mock_client_satisfies_protocol(self, zk_client):
        assert isinstance(zk_client, CoordinationClient)

    def test_refresh_publishes_lowest_member(self, zk_client, watcher):
        zk_client.create(f"{ELECTION_PATH}/member_0000000005", advert("10.0.0.5", 8081))
        zk_client.create(f"{ELECTION_PATH}/member_0000000002", advert("10.0.0.2", 8081))
        zk_client.create(f"{ELECTION_PATH}/member_0000000009", advert("10.0.0.9", 8081))

        assert watcher.refresh() is not None
        assert watcher._cache.read() == LeaderAddress("10.0.0.2", 8081)
        assert zk_client.pending_watches(f"{ELECTION_PATH}/member_0000000002") == 1

    def test_refresh_without_members_leaves_cache_empty(self, watcher):
        assert watcher.refresh() is None
        assert watcher._cache.read() is None

    def test_missing_directory_is_not_fatal(self, zk_client):
        w = CoordinationWatcher(zk_client, "/does/not/exist", LeaderCache())
        assert w.refresh() is None

    def test_decode_failure_keeps_previous_leader(self, zk_client, watcher):
        node = zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        watcher.refresh()
        zk_client.set(node, SOH)

        assert watcher.refresh() is None
        assert watcher._cache.read() == LeaderAddress("10.0.0.1", 8081)

    def test_deletion_never_clears_cache(self, zk_client, watcher):
        node = zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        assert watcher.refresh() == node
        zk_client.delete(node)

        interruption = watcher._await_change(node)
        assert interruption.message == "leader node deleted"
        assert watcher.refresh() is None
        assert watcher._cache.read() == LeaderAddress("10.0.0.1", 8081)

    def test_data_change_ends_wait(self, zk_client, watcher):
        node = zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        assert watcher.refresh() == node
        zk_client.set(node, advert("10.0.0.1", 9090))

        assert watcher._await_change(node).message == "leader node changed"
        watcher.refresh()
        assert watcher._cache.read() == LeaderAddress("10.0.0.1", 9090)

    def test_repeated_refresh_keeps_one_watch(self, zk_client, watcher):
        node = zk_client.create(f"{ELECTION_PATH}/member_", SOH, sequence=True)
        for _ in range(5):
            assert watcher.refresh() is None
        assert zk_client.pending_watches(node) == 1

        zk_client.set(node, advert("10.0.0.1", 8081))
        assert zk_client.pending_watches(node) == 0
        assert watcher.refresh() == node
        assert zk_client.pending_watches(node) == 1

    def test_events_for_other_nodes_ignored(self, zk_client, watcher):
        old = zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.2", 8082), sequence=True)
        watcher.refresh()
        zk_client.delete(old)

        node = watcher.refresh()
        assert node.endswith("member_0000000001")
        watcher._events.put(WatchedEvent(EventType.DELETED, KazooState.CONNECTED, old))
        zk_client.set(node, advert("10.0.0.2", 9092))

        assert watcher._await_change(node).message == "leader node changed"
        assert watcher._events.empty()

    def test_session_expiry_ends_wait(self, zk_client, watcher):
        zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        node = watcher.refresh()
        zk_client.expire_session()

        assert watcher._await_change(node).message.startswith("watcher error")

    def test_disconnect_ends_wait(self, zk_client, watcher):
        zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        node = watcher.refresh()
        zk_client.suspend()

        assert watcher._await_change(node).message == "coordination session not connected"

    def test_start_stop_lifecycle(self, zk_client, watcher):
        zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        watcher.start()
        watcher.start()
        assert watcher.running
        assert eventually(lambda: watcher._cache.read() is not None)

        watcher.stop(timeout=2.0)
        assert not watcher.running
        watcher.stop()

    def test_thread_survives_crash_and_failing_counter(self, zk_client, watcher, monkeypatch):
        from leader_discovery.tier3_platform import coordination

        zk_client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        real_refresh, real_counter = watcher.refresh, coordination.refresh_total
        calls = []

        def flaky_refresh():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return real_refresh()

        def failing_counter(**labels):
            if labels.get("outcome") == "crashed":
                raise ValueError("metrics unavailable")
            return real_counter(**labels)

        monkeypatch.setattr(watcher, "refresh", flaky_refresh)
        monkeypatch.setattr(coordination, "refresh_total", failing_counter)

        with watcher:
            assert eventually(lambda: watcher._cache.read() == LeaderAddress("10.0.0.1", 8081))
            assert watcher.running
        assert len(calls) >= 2


# ── finder façade ──────────────────────────────────────────────────────────

class TestResolve:
    def test_http_address_builds_http_finder(self, fast_config):
        finder = resolve("http://vip:8081", config=fast_config)
        assert isinstance(finder, HttpProbeFinder)
        assert isinstance(finder, Finder)
        finder.close()

    def test_https_address_builds_http_finder(self, fast_config):
        finder = resolve("https://vip", config=fast_config)
        assert isinstance(finder, HttpProbeFinder)
        finder.close()

    @pytest.mark.parametrize("address", ["", "vip:8081", "ftp://vip", "zookeeper://zk1:2181"])
    def test_bad_address(self, address, fast_config):
        with pytest.raises(ConfigurationError, match="bad address"):
            resolve(address, config=fast_config)

    def test_malformed_ensemble(self, fast_config):
        with pytest.raises(ConfigurationError):
            resolve("zk://zk1:2181,zk2", config=fast_config, client=MockCoordinationClient())

    def test_connect_failure_surfaces_to_caller(self, fast_config):
        client = MockCoordinationClient(fail_connect=True)
        with pytest.raises(CoordinationConnectionError):
            resolve("zk://zk1:2181", config=fast_config, client=client)
        assert client.start_timeout == fast_config.connect_timeout

    def test_no_leader_before_first_refresh(self, fast_config):
        client = MockCoordinationClient()
        with resolve("zk://zk1:2181", config=fast_config, client=client) as finder:
            with pytest.raises(ResolutionError, match="no leader found"):
                finder.leader_url()

    def test_zk_end_to_end(self, fast_config):
        client = MockCoordinationClient()
        for seq, host in [(5, "10.0.0.5"), (2, "10.0.0.2"), (9, "10.0.0.9")]:
            client.create(f"{ELECTION_PATH}/member_{seq:010d}", advert(host, 8081))

        with resolve("zk://zk1:2181,zk2:2181", ELECTION_PATH, config=fast_config, client=client) as finder:
            assert isinstance(finder, ZooKeeperFinder)
            assert wait_for_leader(finder, timeout=2.0, interval=0.01) == "http://10.0.0.2:8081"

            # Leader steps down: the next oldest member takes over.
            client.delete(f"{ELECTION_PATH}/member_0000000002")
            assert eventually(lambda: finder.leader_url() == "http://10.0.0.5:8081")

        assert not finder.watcher.running
        assert not client.connected

    def test_deleted_leader_keeps_last_known_value(self, fast_config):
        client = MockCoordinationClient()
        node = client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)

        with resolve("zk://zk1:2181", config=fast_config, client=client) as finder:
            assert wait_for_leader(finder, timeout=2.0, interval=0.01) == "http://10.0.0.1:8081"
            client.delete(node)
            time.sleep(0.2)
            assert finder.leader_url() == "http://10.0.0.1:8081"

            client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.3", 8083), sequence=True)
            assert eventually(lambda: finder.leader_url() == "http://10.0.0.3:8083")

    def test_recovers_after_session_expiry(self, fast_config):
        client = MockCoordinationClient()
        node = client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)

        with resolve("zk://zk1:2181", config=fast_config, client=client) as finder:
            wait_for_leader(finder, timeout=2.0, interval=0.01)
            client.expire_session()
            assert eventually(lambda: client.pending_watches(node) == 1)
            client.set(node, advert("10.0.0.1", 9091))
            assert eventually(lambda: finder.leader_url() == "http://10.0.0.1:9091")

    def test_stale_leader_rejected_after_outage(self, fast_config):
        client = MockCoordinationClient()
        client.create(f"{ELECTION_PATH}/member_", advert("10.0.0.1", 8081), sequence=True)
        clock = ManualClock()

        with resolve("zk://zk1:2181", config=fast_config, client=client, clock=clock) as finder:
            wait_for_leader(finder, timeout=2.0, interval=0.01)
            client.suspend()
            time.sleep(0.2)
            clock.advance(fast_config.max_staleness + 1)
            with pytest.raises(ResolutionError, match="stale"):
                finder.leader_url()

            client.resume()
            assert eventually(lambda: _resolves(finder))


def _resolves(finder: Finder) -> bool:
    try:
        return finder.leader_url() == "http://10.0.0.1:8081"
    except ResolutionError:
        return False
