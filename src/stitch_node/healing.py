"""Healing monitor. Confirms a stitched fracture closed, then pays the miner.

One monitor runs per dispatched stitch, as a detached asyncio task. It polls
the ledger for the target block every ``interval`` seconds, at most
``attempts`` times. The fracture counts as healed once every expected tip is
a direct parent of a fetched block. The miner of that block (first output of
its first transaction) then receives one reward payment. A fetch failure only
costs the attempt; a payout failure ends the monitor without retrying.

With ``scan_tips`` set, each attempt also fetches the ledger's current tips
that the monitor has not seen yet, so a merge mined after the stitch request
is found even when it does not descend from the target. Hashes passed in
``known`` (blocks that existed at dispatch time) are never considered.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Iterable

from aiohttp import ClientError

from stitch_node.errors import LedgerError, WalletError
from stitch_node.ledger import LedgerClient
from stitch_node.models import LedgerBlock
from stitch_node.wallet import Wallet

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 30
DEFAULT_INTERVAL = 2.0


class HealingOutcome(str, Enum):
    PAID = "paid"  # healed, reward submitted
    UNPAID = "unpaid"  # healed, but payee or payment failed
    EXPIRED = "expired"  # attempt budget exhausted


class HealingMonitor:
    """Bounded verification task for one fracture.

    Holds its own copies of the target, tip-set, reward and known hashes; the
    ledger client and wallet are shared read-mostly handles.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        wallet: Wallet,
        target_hash: str,
        tip_hashes: Iterable[str],
        reward: int,
        attempts: int = DEFAULT_ATTEMPTS,
        interval: float = DEFAULT_INTERVAL,
        scan_tips: bool = False,
        known: Iterable[str] = (),
    ) -> None:
        self.ledger = ledger
        self.wallet = wallet
        self.target_hash = target_hash
        self.tip_set = frozenset(tip_hashes)
        self.reward = reward
        self.attempts = attempts
        self.interval = interval
        self.scan_tips = scan_tips
        self._checked = set(known) | self.tip_set

    async def run(self) -> HealingOutcome:
        for attempt in range(1, self.attempts + 1):
            await asyncio.sleep(self.interval)
            try:
                block = await self._poll()
            except (LedgerError, ClientError, asyncio.TimeoutError):
                logger.debug(
                    "Healing poll %d/%d for %s failed",
                    attempt, self.attempts, self.target_hash[:12],
                    exc_info=True,
                )
                continue

            if block is None:
                continue

            logger.info(
                "HEALED: %s merges %d tips (attempt %d/%d)",
                block.hash[:12], len(self.tip_set), attempt, self.attempts,
            )
            return await self._pay(block)

        logger.info(
            "Healing window for %s expired after %d attempts",
            self.target_hash[:12], self.attempts,
        )
        return HealingOutcome.EXPIRED

    def merges(self, block: LedgerBlock) -> bool:
        return self.tip_set.issubset(block.parents)

    async def _poll(self) -> LedgerBlock | None:
        block = await self.ledger.get_block(self.target_hash)
        if self.merges(block):
            return block
        if not self.scan_tips:
            return None

        for tip in await self.ledger.get_tip_hashes():
            if tip in self._checked:
                continue
            candidate = await self.ledger.get_block(tip)
            # blocks never gain parents, so a checked tip stays checked
            self._checked.add(tip)
            if self.merges(candidate):
                return candidate
        return None

    async def _pay(self, block: LedgerBlock) -> HealingOutcome:
        address = block.payee_address()
        if not address:
            logger.warning("Healed block %s has no payee address; no reward sent", block.hash[:12])
            return HealingOutcome.UNPAID

        try:
            tx = self.wallet.create_transaction(address, self.reward)
            txid = await self.ledger.submit_transaction(tx)
        except (WalletError, LedgerError, ClientError, asyncio.TimeoutError) as e:
            logger.warning("Reward of %d sompi to %s failed: %s", self.reward, address, e)
            return HealingOutcome.UNPAID

        logger.info("Reward sent: %d sompi to %s (tx %s)", self.reward, address, txid)
        return HealingOutcome.PAID
