"""Controlled flooding for stitch requests.

A stitch request received from a peer is relayed to our other peers with its
TTL decremented. Messages already seen (same signed request) are dropped, as
are requests whose signature does not verify.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass

from stitch_node.models import StitchMessage

logger = logging.getLogger(__name__)

# Maximum number of seen message IDs to cache (LRU eviction)
MAX_SEEN_CACHE = 10_000


@dataclass
class FloodingConfig:
    """Configuration for stitch request relaying."""

    default_ttl: int = 7
    max_ttl: int = 15
    dedup_window_seconds: float = 300.0


class FloodingProtocol:
    """Dedup + TTL gate in front of stitch request handlers."""

    def __init__(self, config: FloodingConfig | None = None) -> None:
        self.config = config or FloodingConfig()
        self._seen: OrderedDict[str, float] = OrderedDict()

    def should_propagate(self, message: StitchMessage) -> bool:
        """Check TTL bounds, dedup cache and signature."""
        msg_id = message.message_id

        if message.ttl <= 0:
            logger.debug("Dropping stitch %s: TTL expired", msg_id[:12])
            return False

        if message.ttl > self.config.max_ttl:
            logger.warning("Dropping stitch %s: TTL %d exceeds max", msg_id[:12], message.ttl)
            return False

        if msg_id in self._seen:
            logger.debug("Dropping stitch %s: already seen", msg_id[:12])
            return False

        if not message.request.verify():
            logger.warning("Dropping stitch %s: bad signature", msg_id[:12])
            return False

        return True

    def mark_seen(self, message: StitchMessage) -> None:
        self._seen[message.message_id] = time.time()
        while len(self._seen) > MAX_SEEN_CACHE:
            self._seen.popitem(last=False)

    def prepare_forward(self, message: StitchMessage) -> StitchMessage:
        """Copy of ``message`` with the TTL decremented."""
        return message.model_copy(update={"ttl": message.ttl - 1})

    def handle_incoming(self, message: StitchMessage, from_peer: str) -> bool:
        """Process a received stitch message.

        Returns:
            True if the message should be forwarded, False if dropped.
        """
        if not self.should_propagate(message):
            return False

        self.mark_seen(message)
        request = message.request
        logger.info(
            "Stitch request from %s: weak=%s tips=%d reward=%d",
            from_peer,
            request.weak_hash[:12],
            len(request.tip_hashes),
            request.reward_sompi,
        )
        return True

    def cleanup_stale(self) -> int:
        """Remove expired entries from the dedup cache; returns how many."""
        cutoff = time.time() - self.config.dedup_window_seconds
        removed = 0
        while self._seen:
            _, timestamp = next(iter(self._seen.items()))
            if timestamp < cutoff:
                self._seen.popitem(last=False)
                removed += 1
            else:
                break
        return removed
