"""
leader_discovery.tier3_platform.election
─────────────────────────────────────────
Leader-election conventions of the coordination service:

  - ensemble addresses:   zk://host1:2181,host2:2181
  - election members:     ephemeral-sequential children named member_<seq>;
                          the lowest surviving sequence is the leader
  - leader advertisement: JSON stored at the leader's member node
"""
from __future__ import annotations

from collections.abc import Iterable
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from leader_discovery.tier0_core.errors import ConfigurationError, DecodeError, NotFoundError, ResolutionError
from leader_discovery.tier2_reliability.cache import LeaderAddress

ZK_SCHEME = "zk://"
LEADER_PREFIX = "member_"

# Placeholder some writers store before the real advertisement.
SOH = b"\x01"


# ── Ensemble address ────────────────────────────────────────────────────────

def parse_ensemble(address: str) -> list[tuple[str, int]]:
    """
    Split a zk:// address into (host, port) pairs.

    Raises ConfigurationError if any entry is not host:port.
    """
    if not address.startswith(ZK_SCHEME):
        raise ConfigurationError("bad address", address=address)

    members: list[tuple[str, int]] = []
    for entry in address[len(ZK_SCHEME):].split(","):
        entry = entry.strip()
        if entry.startswith(ZK_SCHEME):
            entry = entry[len(ZK_SCHEME):]
        try:
            parts = urlsplit(f"//{entry}")
            host, port = parts.hostname, parts.port
        except ValueError as exc:
            raise ConfigurationError(f"bad ensemble member {entry!r}", address=address) from exc
        if not host or port is None or parts.path or port == 0:
            raise ConfigurationError(f"bad ensemble member {entry!r}", address=address)
        members.append((host, port))
    return members


def connection_string(members: Iterable[tuple[str, int]]) -> str:
    """Render ensemble members the way kazoo expects them: h1:p1,h2:p2."""
    return ",".join(
        f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
        for host, port in members
    )


# ── Leader node selection ───────────────────────────────────────────────────

def select_leader_node(election_path: str, children: Iterable[str]) -> str:
    """
    Return the full path of the member with the lowest sequence number.

    Children without the member prefix are skipped. A member whose suffix
    is not a number fails the whole selection.
    """
    leader: str | None = None
    leader_seq = -1
    for child in children:
        _, sep, suffix = child.partition(LEADER_PREFIX)
        if not sep:
            continue
        if not (suffix.isascii() and suffix.isdigit()):
            raise ResolutionError(
                f"bad sequence number in election node {child!r}",
                election_path=election_path,
            )
        seq = int(suffix)
        if leader is None or seq < leader_seq:
            leader, leader_seq = child, seq

    if leader is None:
        raise NotFoundError("no leader node", election_path=election_path)

    return f"{election_path.rstrip('/')}/{leader}"


# ── Leader advertisement ────────────────────────────────────────────────────

class Endpoint(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(ge=0, le=65535)


class LeaderAdvertisement(BaseModel):
    """Payload a leader writes to its member node. Only serviceEndpoint is used."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    service_endpoint: Endpoint = Field(alias="serviceEndpoint")
    # Carried through unvalidated; resolution only reads serviceEndpoint.
    additional_endpoints: dict[str, Any] | None = Field(default=None, alias="additionalEndpoints")
    status: str | None = None

    @property
    def address(self) -> LeaderAddress:
        return LeaderAddress(self.service_endpoint.host, self.service_endpoint.port)


def decode_advertisement(data: bytes) -> LeaderAdvertisement:
    """
    Decode the JSON advertisement stored at a leader node.

    Raises DecodeError for the SOH placeholder and for any payload that is
    not a valid advertisement.
    """
    if data == SOH:
        raise DecodeError("received SOH control character")
    if not data:
        raise DecodeError("empty leader advertisement")
    try:
        return LeaderAdvertisement.model_validate_json(data)
    except PydanticValidationError as exc:
        fields = {
            ".".join(str(loc) for loc in err["loc"]): err["msg"]
            for err in exc.errors()
        }
        raise DecodeError("malformed leader advertisement", fields=fields) from exc


__all__ = [
    "LEADER_PREFIX",
    "SOH",
    "ZK_SCHEME",
    "Endpoint",
    "LeaderAdvertisement",
    "connection_string",
    "decode_advertisement",
    "parse_ensemble",
    "select_leader_node",
]
