"""Peer table entries for the stitch transport."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class PeerState(str, Enum):
    """Delivery state of a peer, as seen from our last send."""

    DISCOVERED = "discovered"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass
class Peer:
    """A stitch-node peer that receives our stitch requests."""

    address: str
    port: int
    state: PeerState = PeerState.DISCOVERED
    last_seen: float | None = None
    failures: int = 0

    @classmethod
    def parse(cls, endpoint: str) -> Peer:
        """Build a peer from a ``host:port`` string."""
        host, port_str = endpoint.rsplit(":", 1)
        return cls(address=host, port=int(port_str))

    @property
    def endpoint(self) -> str:
        return f"{self.address}:{self.port}"

    def record_delivery(self, ok: bool) -> None:
        if ok:
            self.state = PeerState.REACHABLE
            self.last_seen = time.time()
            self.failures = 0
        else:
            self.state = PeerState.UNREACHABLE
            self.failures += 1
