"""Stitch daemon — binds ledger notifications to the window, controller and P2P.

Per notification, strictly in arrival order:
1. Insert the block into the windowed DAG (duplicates stop here)
2. Classify it as orphan or not against the window's selected chain
3. Feed the outcome to the adaptive controller
4. Look for a fracture at the controller's current minimum delta
5. Ask the controller whether to stitch it, and for how much
6. Broadcast the stitch request, record the stitch and spawn a healing monitor

All window and controller mutation happens on this loop. Healing monitors run
as detached tasks and never touch either.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable

from stitch_node.config import StitchConfig
from stitch_node.controller import AdaptiveController, Decision
from stitch_node.dag.window import Fracture, TipPolicy, WindowedDag
from stitch_node.errors import BroadcastError, LedgerError, StreamClosedError
from stitch_node.healing import HealingMonitor
from stitch_node.ledger import LedgerClient
from stitch_node.models import BlockInfo, LedgerBlock
from stitch_node.network.stitch import StitchNetwork, broadcast_stitch
from stitch_node.wallet import Wallet

logger = logging.getLogger(__name__)

Broadcaster = Callable[[StitchNetwork, str, list[str], int, Wallet], Awaitable[Any]]


class StitchDaemon:
    """The fracture-watching event loop."""

    def __init__(
        self,
        config: StitchConfig,
        ledger: LedgerClient,
        wallet: Wallet,
        network: StitchNetwork,
        broadcast: Broadcaster = broadcast_stitch,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.wallet = wallet
        self.network = network
        self._broadcast = broadcast

        self.dag = WindowedDag(config.dag_window, tip_policy=TipPolicy(config.tip_policy))
        self.controller = AdaptiveController(config.controller_config())

        # weak hash -> running healing monitor
        self._monitors: dict[str, asyncio.Task] = {}
        # (weak hash, tip set) of every dispatched stitch, oldest first
        self._stitched: OrderedDict[tuple[str, frozenset[str]], None] = OrderedDict()

    @property
    def active_monitors(self) -> int:
        return len(self._monitors)

    # ================================================================
    # Lifecycle
    # ================================================================

    async def bootstrap(self) -> int:
        """Fill the window from the current tips backward.

        Parents are walked breadth-first until ``dag_window`` blocks are
        fetched, then inserted oldest-first so parent edges form. Blocks that
        fail to fetch are skipped.

        Returns:
            Number of blocks in the window afterwards.
        """
        tips = await self.ledger.get_tip_hashes()
        queue: deque[str] = deque(tips)
        seen = set(tips)
        fetched: list[BlockInfo] = []

        while queue and len(fetched) < self.dag.capacity:
            block_hash = queue.popleft()
            try:
                block = await self.ledger.get_block(block_hash)
            except LedgerError as e:
                logger.warning("Bootstrap fetch of %s failed: %s", block_hash[:12], e)
                continue
            fetched.append(block.info)
            for parent in block.parents:
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)

        for info in sorted(fetched, key=lambda b: (b.blue_score, b.timestamp)):
            self.dag.add_block(info)
        logger.info("DAG bootstrapped: %d nodes (%d tips)", len(self.dag), len(tips))
        return len(self.dag)

    async def run(self) -> None:
        """Bootstrap, then process notifications until the stream ends.

        Raises:
            StreamClosedError: Always, once the notification stream closes.
        """
        await self.bootstrap()
        async for block in self.ledger.subscribe_block_added():
            await self.process_block(block)
        raise StreamClosedError("Block-added notification stream ended")

    async def close(self) -> None:
        """Cancel monitors still running at shutdown."""
        tasks = list(self._monitors.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._monitors.clear()

    # ================================================================
    # Per-block cycle
    # ================================================================

    async def process_block(
        self,
        block: LedgerBlock | BlockInfo,
        now: float | None = None,
    ) -> Decision | None:
        """Run one detection cycle for a newly added block.

        Returns:
            The controller's decision for the fracture found, or None when
            nothing was evaluated (duplicate, no fracture, fracture already
            stitched or already merged, or broadcast failure).
        """
        info = block.info if isinstance(block, LedgerBlock) else block
        logger.info("New block: %s (blue=%d)", info.short, info.blue_score)

        if not self.dag.add_block(info):
            logger.debug("Block %s already in window", info.short)
            return None

        is_orphan = not self.dag.is_in_selected_chain(info.hash)
        self.controller.update_block(info, is_orphan)
        if is_orphan:
            logger.info(
                "Block %s is off the selected chain (orphan rate %.2f)",
                info.short, self.controller.orphan_rate(),
            )

        fracture = self.dag.find_fracture(self.controller.effective_min_delta())
        if fracture is None:
            return None

        if fracture.weak.hash in self._monitors or self._fracture_key(fracture) in self._stitched:
            logger.debug("Fracture at %s already stitched", fracture.weak.short)
            return None
        if self._already_merged(fracture):
            logger.debug("Fracture at %s already merged in the window", fracture.weak.short)
            return None

        now = time.time() if now is None else now
        bps = self.controller.block_rate()
        decision = self.controller.decide(fracture.min_delta, bps, now)
        if decision is not Decision.STITCH:
            logger.debug(
                "Fracture at %s suppressed: %s (delta=%d, bps=%.2f)",
                fracture.weak.short, decision.value, fracture.min_delta, bps,
            )
            return decision

        await self._stitch(fracture, info, bps, now)
        return decision

    async def _stitch(self, fracture: Fracture, trigger: BlockInfo, bps: float, now: float) -> bool:
        tip_hashes = fracture.tip_hashes
        sus = self.controller.sus(fracture.min_delta, bps)
        reward = self.controller.reward(sus)
        logger.info(
            "Fracture: %s | tips: %s | delta=%d centrality=%.3f sus=%.3f reward=%d",
            fracture.weak.short,
            [h[:12] for h in tip_hashes],
            fracture.min_delta,
            fracture.centrality,
            sus,
            reward,
        )

        try:
            await self._broadcast(self.network, fracture.weak.hash, tip_hashes, reward, self.wallet)
        except BroadcastError as e:
            if self.config.halt_on_broadcast_failure:
                raise
            logger.warning("Stitch broadcast for %s failed: %s", fracture.weak.short, e)
            return False
        logger.info("P2P stitch request sent for %s", fracture.weak.short)

        self.controller.record_stitch(now)
        self._remember(fracture)
        self._spawn_monitor(fracture.weak.hash, trigger.hash, tip_hashes, reward)
        return True

    @staticmethod
    def _fracture_key(fracture: Fracture) -> tuple[str, frozenset[str]]:
        return fracture.weak.hash, frozenset(fracture.tip_hashes)

    def _remember(self, fracture: Fracture) -> None:
        self._stitched[self._fracture_key(fracture)] = None
        while len(self._stitched) > self.dag.capacity:
            self._stitched.popitem(last=False)

    def _already_merged(self, fracture: Fracture) -> bool:
        """True if some resident block already has every tip as a parent."""
        tips = fracture.tip_hashes
        common = set(self.dag.children(tips[0]))
        for tip in tips[1:]:
            common.intersection_update(self.dag.children(tip))
        return bool(common)

    def _spawn_monitor(self, weak_hash: str, target_hash: str, tip_hashes: list[str], reward: int) -> None:
        monitor = HealingMonitor(
            self.ledger,
            self.wallet,
            target_hash,
            tuple(tip_hashes),
            reward,
            attempts=self.config.heal_attempts,
            interval=self.config.heal_interval,
            scan_tips=True,
            known=self.dag.hashes(),
        )
        task = asyncio.create_task(monitor.run())
        self._monitors[weak_hash] = task
        task.add_done_callback(lambda t: self._monitor_done(weak_hash, t))

    def _monitor_done(self, weak_hash: str, task: asyncio.Task) -> None:
        self._monitors.pop(weak_hash, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Healing monitor for %s failed: %r", weak_hash[:12], exc,
                exc_info=exc,
            )
