"""Adaptive controller — turns fracture signals into stitch decisions and rewards.

Inputs per fracture: the weight delta at the weak block and the network's
current block rate. State carried across blocks: a rolling orphan rate, a
rolling block-rate estimate and the time of the last stitch.

With ``adaptive`` enabled the minimum delta and the cooldown both shrink as the
orphan rate rises (a fracturing network gets stitched sooner), the cooldown
never dropping below ``min_rate_limit``, and rewards scale with the suspicion
score. With it disabled the baseline values apply unchanged and every stitch
pays ``base_reward_sompi``.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum

from stitch_node.models import BlockInfo

logger = logging.getLogger(__name__)

# Weights of the two suspicion terms; they sum to 1 so sus stays in [0, 1]
DELTA_WEIGHT = 0.7
RATE_WEIGHT = 0.3


class Decision(str, Enum):
    """Outcome of evaluating one fracture candidate."""

    STITCH = "stitch"
    BELOW_THRESHOLD = "below_threshold"
    RATE_LIMITED = "rate_limited"
    LOW_CONFIDENCE = "low_confidence"


@dataclass
class ControllerConfig:
    """Static controller parameters, fixed at construction."""

    base_min_delta: int = 100
    base_rate_limit: float = 60.0
    base_reward_sompi: int = 100_000_000
    max_reward_sompi: int = 1_000_000_000
    min_rate_limit: float = 10.0
    adaptive: bool = True
    target_bps: float = 1.0
    orphan_window: int = 100
    rate_window: int = 64
    confidence_threshold: float = 0.3


class AdaptiveController:
    """Stateful scorer for fracture candidates.

    Mutated only by the orchestrator (``update_block``, ``record_stitch``);
    the decision functions read that state.
    """

    def __init__(self, config: ControllerConfig | None = None) -> None:
        self.config = config or ControllerConfig()
        cfg = self.config
        if cfg.base_min_delta < 1:
            raise ValueError("base_min_delta must be positive")
        if cfg.max_reward_sompi < cfg.base_reward_sompi:
            raise ValueError("max_reward_sompi must be >= base_reward_sompi")
        if cfg.min_rate_limit > cfg.base_rate_limit:
            raise ValueError("min_rate_limit must be <= base_rate_limit")
        if cfg.target_bps <= 0:
            raise ValueError("target_bps must be positive")

        self._orphans: deque[bool] = deque(maxlen=max(1, cfg.orphan_window))
        self._timestamps: deque[int] = deque(maxlen=max(2, cfg.rate_window))
        self.last_stitch: float | None = None

    # ── Block observations ───────────────────────────────────────────

    def update_block(self, block: BlockInfo, is_orphan: bool) -> None:
        """Record a newly ingested block and whether it was orphaned."""
        self._orphans.append(bool(is_orphan))
        self._timestamps.append(block.timestamp)

    def orphan_rate(self) -> float:
        """Fraction of the last ``orphan_window`` blocks that were orphaned."""
        if not self._orphans:
            return 0.0
        return sum(self._orphans) / len(self._orphans)

    def block_rate(self) -> float:
        """Observed blocks per second over the rolling timestamp window.

        Timestamps are in milliseconds. Falls back to ``target_bps`` until two
        distinct timestamps have been seen.
        """
        if len(self._timestamps) < 2:
            return self.config.target_bps
        span_ms = max(self._timestamps) - min(self._timestamps)
        if span_ms <= 0:
            return self.config.target_bps
        return (len(self._timestamps) - 1) / (span_ms / 1000.0)

    # ── Scoring ──────────────────────────────────────────────────────

    def sus(self, delta: int, bps: float) -> float:
        """Suspicion score in [0, 1] for a fracture of weight gap ``delta``.

        Grows with ``delta`` and with how far ``bps`` sits from the baseline
        rate, in either direction.
        """
        delta_term = 1.0 - math.exp(-max(0, delta) / self.config.base_min_delta)
        if bps <= 0:
            rate_term = 1.0
        else:
            skew = abs(math.log(bps / self.config.target_bps))
            rate_term = skew / (1.0 + skew)
        score = DELTA_WEIGHT * delta_term + RATE_WEIGHT * rate_term
        return min(1.0, max(0.0, score))

    def effective_min_delta(self) -> int:
        base = self.config.base_min_delta
        if not self.config.adaptive:
            return base
        return max(1, round(base * (1.0 - 0.5 * self.orphan_rate())))

    def cooldown(self) -> float:
        """Seconds that must pass after a stitch before the next one."""
        cfg = self.config
        if not cfg.adaptive:
            return cfg.base_rate_limit
        return max(cfg.min_rate_limit, cfg.base_rate_limit * (1.0 - self.orphan_rate()))

    def decide(self, delta: int, bps: float, now: float | None = None) -> Decision:
        """Run the stitch gate and report which check (if any) suppressed it."""
        now = time.time() if now is None else now
        if delta < self.effective_min_delta():
            return Decision.BELOW_THRESHOLD
        if self.last_stitch is not None and now - self.last_stitch < self.cooldown():
            return Decision.RATE_LIMITED
        if self.config.adaptive and self.sus(delta, bps) < self.config.confidence_threshold:
            return Decision.LOW_CONFIDENCE
        return Decision.STITCH

    def should_stitch(self, delta: int, bps: float, now: float | None = None) -> bool:
        return self.decide(delta, bps, now) is Decision.STITCH

    def reward(self, sus: float) -> int:
        """Payout in sompi for a suspicion score; bounded by the configured range."""
        cfg = self.config
        if not cfg.adaptive:
            return cfg.base_reward_sompi
        clamped = min(1.0, max(0.0, sus))
        span = cfg.max_reward_sompi - cfg.base_reward_sompi
        return cfg.base_reward_sompi + round(span * clamped)

    def record_stitch(self, now: float | None = None) -> None:
        """Close the rate-limit window starting at ``now``."""
        self.last_stitch = time.time() if now is None else now
        logger.debug("Stitch recorded at %.3f (cooldown %.1fs)", self.last_stitch, self.cooldown())
