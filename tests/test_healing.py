"""Tests for the healing monitor."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from stitch_node.errors import LedgerError
from stitch_node.healing import HealingMonitor, HealingOutcome
from stitch_node.models import LedgerBlock
from stitch_node.wallet import Wallet

MINER = "kaspa:miner0001"


def make_block(parents: tuple[str, ...], payee: str | None = MINER, block_hash: str = "target") -> LedgerBlock:
    outputs = [{"address": payee, "amount": 50}] if payee else []
    return LedgerBlock.model_validate({
        "hash": block_hash,
        "blueScore": 1_000,
        "directParents": list(parents),
        "timestamp": 1,
        "transactions": [{"transactionId": "cb", "outputs": outputs}],
    })


def make_monitor(ledger: MagicMock, wallet: Wallet | None = None, attempts: int = 30) -> HealingMonitor:
    return HealingMonitor(
        ledger,
        wallet or Wallet.generate(),
        "target",
        ["t1", "t2"],
        reward=5_000,
        attempts=attempts,
        interval=0,
    )


@pytest.fixture
def ledger() -> MagicMock:
    mock = MagicMock()
    mock.get_block = AsyncMock()
    mock.submit_transaction = AsyncMock(return_value="txid-1")
    return mock


class TestHealingMonitor:
    @pytest.mark.asyncio
    async def test_heals_on_fifth_attempt_and_pays_once(self, ledger) -> None:
        ledger.get_block.side_effect = [
            LedgerError("timeout"),
            make_block(("t1",)),
            LedgerError("connection reset"),
            make_block(("other",)),
            make_block(("t1", "t2", "t3")),
        ] + [make_block(("t1", "t2"))] * 25

        outcome = await make_monitor(ledger).run()

        assert outcome is HealingOutcome.PAID
        assert ledger.get_block.await_count == 5
        assert ledger.submit_transaction.await_count == 1
        tx = ledger.submit_transaction.await_args.args[0]
        assert tx.recipient == MINER
        assert tx.amount == 5_000

    @pytest.mark.asyncio
    async def test_expires_silently(self, ledger) -> None:
        ledger.get_block.return_value = make_block(("t1",))
        outcome = await make_monitor(ledger, attempts=30).run()
        assert outcome is HealingOutcome.EXPIRED
        assert ledger.get_block.await_count == 30
        ledger.submit_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_fetches_fail(self, ledger) -> None:
        ledger.get_block.side_effect = LedgerError("down")
        outcome = await make_monitor(ledger, attempts=3).run()
        assert outcome is HealingOutcome.EXPIRED
        ledger.submit_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_payee_stops_without_payment(self, ledger) -> None:
        ledger.get_block.return_value = make_block(("t1", "t2"), payee=None)
        outcome = await make_monitor(ledger).run()
        assert outcome is HealingOutcome.UNPAID
        assert ledger.get_block.await_count == 1
        ledger.submit_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_failure_is_not_retried(self, ledger) -> None:
        ledger.get_block.return_value = make_block(("t1", "t2"))
        ledger.submit_transaction.side_effect = LedgerError("rejected")
        outcome = await make_monitor(ledger).run()
        assert outcome is HealingOutcome.UNPAID
        assert ledger.get_block.await_count == 1
        assert ledger.submit_transaction.await_count == 1

    @pytest.mark.asyncio
    async def test_tip_set_is_copied(self, ledger) -> None:
        tips = ["t1", "t2"]
        monitor = HealingMonitor(ledger, Wallet.generate(), "target", tips, 10, interval=0)
        tips.append("t3")
        assert monitor.tip_set == frozenset({"t1", "t2"})


class TestTipScan:
    @staticmethod
    def scanning_monitor(ledger: MagicMock, known=(), attempts: int = 3) -> HealingMonitor:
        return HealingMonitor(
            ledger,
            Wallet.generate(),
            "target",
            ["t1", "t2"],
            reward=700,
            attempts=attempts,
            interval=0,
            scan_tips=True,
            known=known,
        )

    @pytest.mark.asyncio
    async def test_pays_miner_of_new_merging_tip(self, ledger) -> None:
        blocks = {
            "target": make_block(("t0",)),
            "side": make_block(("t1",), payee="kaspa:other", block_hash="side"),
            "merge": make_block(("t1", "t2"), payee="kaspa:merger", block_hash="merge"),
        }
        ledger.get_block.side_effect = lambda h: blocks[h]
        ledger.get_tip_hashes = AsyncMock(side_effect=[["side", "t2"], ["side", "merge"]])

        outcome = await self.scanning_monitor(ledger).run()

        assert outcome is HealingOutcome.PAID
        assert ledger.submit_transaction.await_args.args[0].recipient == "kaspa:merger"
        fetched = [c.args[0] for c in ledger.get_block.await_args_list]
        assert fetched == ["target", "side", "target", "merge"]

    @pytest.mark.asyncio
    async def test_known_blocks_never_pay(self, ledger) -> None:
        blocks = {
            "target": make_block(("t0",)),
            "old-merge": make_block(("t1", "t2"), block_hash="old-merge"),
        }
        ledger.get_block.side_effect = lambda h: blocks[h]
        ledger.get_tip_hashes = AsyncMock(return_value=["old-merge"])

        outcome = await self.scanning_monitor(ledger, known=["old-merge"]).run()

        assert outcome is HealingOutcome.EXPIRED
        ledger.submit_transaction.assert_not_awaited()
        assert ledger.get_block.await_count == 3

    @pytest.mark.asyncio
    async def test_scan_disabled_by_default(self, ledger) -> None:
        ledger.get_block.return_value = make_block(("t0",))
        ledger.get_tip_hashes = AsyncMock(return_value=["merge"])
        outcome = await make_monitor(ledger, attempts=2).run()
        assert outcome is HealingOutcome.EXPIRED
        ledger.get_tip_hashes.assert_not_awaited()
