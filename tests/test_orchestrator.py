"""Tests for the stitch daemon's per-block cycle and lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from stitch_node.config import StitchConfig
from stitch_node.controller import Decision
from stitch_node.errors import BroadcastError, LedgerError, StreamClosedError
from stitch_node.models import LedgerBlock
from stitch_node.orchestrator import StitchDaemon
from stitch_node.wallet import Wallet


def block(block_hash: str, blue_score: int, parents: tuple[str, ...] = (), ts: int = 0) -> LedgerBlock:
    return LedgerBlock(hash=block_hash, blue_score=blue_score, parents=parents, timestamp=ts)


def make_config(**overrides) -> StitchConfig:
    params = dict(
        rpc_url="ws://127.0.0.1:1",
        adaptive=False,
        base_min_delta=50,
        base_rate_limit=60.0,
        min_rate_limit=10.0,
        base_reward_sompi=1_000,
        max_reward_sompi=5_000,
        dag_window=10,
        heal_attempts=1,
        heal_interval=0.0,
    )
    params.update(overrides)
    return StitchConfig(**params)


def make_ledger(blocks: dict[str, LedgerBlock], tips: list[str] | None = None) -> MagicMock:
    async def get_block(block_hash: str) -> LedgerBlock:
        if block_hash not in blocks:
            raise LedgerError(f"Block {block_hash} not found")
        return blocks[block_hash]

    ledger = MagicMock()
    ledger.get_tip_hashes = AsyncMock(return_value=tips or [])
    ledger.get_block = AsyncMock(side_effect=get_block)
    ledger.submit_transaction = AsyncMock(return_value="txid")
    return ledger


def make_daemon(ledger: MagicMock, **overrides) -> tuple[StitchDaemon, AsyncMock]:
    broadcast = AsyncMock()
    daemon = StitchDaemon(
        make_config(**overrides),
        ledger,
        Wallet.generate(),
        network=MagicMock(),
        broadcast=broadcast,
    )
    return daemon, broadcast


async def drain_monitors(daemon: StitchDaemon) -> None:
    await asyncio.gather(*list(daemon._monitors.values()))
    await asyncio.sleep(0)  # let done-callbacks run


FRACTURE = [block("A", 100), block("B", 150, ("A",)), block("C", 400, ("A",))]


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_walks_back_from_tips(self) -> None:
        blocks = {
            "a": block("a", 100, ("missing",)),
            "b": block("b", 150, ("a",)),
            "c": block("c", 200, ("b",)),
            "d": block("d", 210, ("b",)),
        }
        daemon, _ = make_daemon(make_ledger(blocks, tips=["c", "d"]))
        assert await daemon.bootstrap() == 4
        assert daemon.dag.edge_count == 3
        assert daemon.dag.children("b") == ["c", "d"]

    @pytest.mark.asyncio
    async def test_respects_window(self) -> None:
        blocks = {h: block(h, i, (f"p{h}",)) for i, h in enumerate("wxyz")}
        daemon, _ = make_daemon(make_ledger(blocks, tips=list("wxyz")), dag_window=2)
        assert await daemon.bootstrap() == 2


class TestProcessBlock:
    @pytest.mark.asyncio
    async def test_stitch_dispatch(self) -> None:
        ledger = make_ledger({b.hash: b for b in FRACTURE})
        daemon, broadcast = make_daemon(ledger)

        assert await daemon.process_block(FRACTURE[0], now=1_000.0) is None
        assert await daemon.process_block(FRACTURE[1], now=1_000.0) is None
        assert await daemon.process_block(FRACTURE[2], now=1_000.0) is Decision.STITCH

        broadcast.assert_awaited_once_with(daemon.network, "A", ["B", "C"], 1_000, daemon.wallet)
        assert daemon.controller.last_stitch == 1_000.0
        assert daemon.active_monitors == 1

        await drain_monitors(daemon)
        assert daemon.active_monitors == 0
        ledger.get_block.assert_awaited_with("C")
        ledger.submit_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_block_ignored(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}))
        await daemon.process_block(FRACTURE[0], now=0.0)
        assert await daemon.process_block(FRACTURE[0], now=0.0) is None
        assert len(daemon.dag) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_after_stitch(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}))
        for b in FRACTURE:
            await daemon.process_block(b, now=1_000.0)
        await drain_monitors(daemon)

        decision = await daemon.process_block(block("G", 500, ("A",)), now=1_001.0)
        assert decision is Decision.RATE_LIMITED
        assert broadcast.await_count == 1

        decision = await daemon.process_block(block("H", 600, ("A",)), now=1_061.0)
        assert decision is Decision.STITCH
        assert broadcast.await_count == 2
        await drain_monitors(daemon)

    @pytest.mark.asyncio
    async def test_fracture_in_flight_not_restitched(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}), heal_attempts=5, heal_interval=60.0)
        for b in FRACTURE:
            await daemon.process_block(b, now=1_000.0)
        assert await daemon.process_block(block("G", 500, ("A",)), now=5_000.0) is None
        assert broadcast.await_count == 1
        await daemon.close()
        assert daemon.active_monitors == 0

    @pytest.mark.asyncio
    async def test_broadcast_failure_continues(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}))
        broadcast.side_effect = BroadcastError("no peer accepted")
        for b in FRACTURE:
            result = await daemon.process_block(b, now=1_000.0)
        assert result is None
        assert daemon.controller.last_stitch is None
        assert daemon.active_monitors == 0

    @pytest.mark.asyncio
    async def test_broadcast_failure_can_halt(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}), halt_on_broadcast_failure=True)
        broadcast.side_effect = BroadcastError("no peer accepted")
        await daemon.process_block(FRACTURE[0], now=1_000.0)
        await daemon.process_block(FRACTURE[1], now=1_000.0)
        with pytest.raises(BroadcastError):
            await daemon.process_block(FRACTURE[2], now=1_000.0)

    @pytest.mark.asyncio
    async def test_orphans_feed_controller(self) -> None:
        daemon, _ = make_daemon(make_ledger({}), base_min_delta=10_000)
        await daemon.process_block(block("g", 100), now=0.0)
        await daemon.process_block(block("h", 150, ("g",)), now=0.0)
        await daemon.process_block(block("i", 120, ("g",)), now=0.0)
        assert daemon.controller.orphan_rate() == pytest.approx(1 / 3)


class TestRun:
    @pytest.mark.asyncio
    async def test_stream_end_is_fatal(self) -> None:
        async def stream():
            for b in FRACTURE[:2]:
                yield b
            raise StreamClosedError("Block-added notification stream closed")

        ledger = make_ledger({})
        ledger.subscribe_block_added = MagicMock(return_value=stream())
        daemon, _ = make_daemon(ledger)

        with pytest.raises(StreamClosedError):
            await daemon.run()
        assert daemon.dag.hashes() == ["A", "B"]
        ledger.get_tip_hashes.assert_awaited_once()


def coinbase_block(block_hash: str, blue_score: int, parents: tuple[str, ...], payee: str) -> LedgerBlock:
    return LedgerBlock.model_validate({
        "hash": block_hash,
        "blueScore": blue_score,
        "directParents": list(parents),
        "transactions": [{"transactionId": "cb", "outputs": [{"address": payee, "amount": 50}]}],
    })


class TestSinglePayout:
    @pytest.mark.asyncio
    async def test_merge_blocks_do_not_restitch(self) -> None:
        split = [block("A", 100), block("B", 200, ("A",)), block("C", 200, ("A",))]
        merges = [
            coinbase_block("M", 210, ("B", "C"), "kaspa:m"),
            coinbase_block("N", 210, ("B", "C"), "kaspa:n"),
        ]
        ledger = make_ledger({b.hash: b for b in split + merges})
        daemon, broadcast = make_daemon(ledger, base_min_delta=50, heal_attempts=1, heal_interval=0.0)

        for b in split:
            result = await daemon.process_block(b, now=1_000.0)
        assert result is Decision.STITCH
        await drain_monitors(daemon)

        assert await daemon.process_block(merges[0], now=1_061.0) is None
        assert await daemon.process_block(merges[1], now=1_122.0) is None
        await drain_monitors(daemon)

        assert broadcast.await_count == 1
        assert ledger.submit_transaction.await_count == 0

    @pytest.mark.asyncio
    async def test_stitched_fracture_not_repeated_after_cooldown(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}))
        for b in FRACTURE:
            await daemon.process_block(b, now=1_000.0)
        await drain_monitors(daemon)

        assert await daemon.process_block(block("D", 300, ("B",)), now=2_000.0) is None
        assert broadcast.await_count == 1

    @pytest.mark.asyncio
    async def test_fracture_already_merged_is_skipped(self) -> None:
        daemon, broadcast = make_daemon(make_ledger({}))
        broadcast.side_effect = BroadcastError("no peer accepted")
        for b in FRACTURE:
            await daemon.process_block(b, now=1_000.0)
        assert broadcast.await_count == 1

        assert await daemon.process_block(block("M", 410, ("B", "C")), now=2_000.0) is None
        assert broadcast.await_count == 1

    @pytest.mark.asyncio
    async def test_merge_mined_after_stitch_is_paid(self) -> None:
        merge = coinbase_block("M", 410, ("B", "C"), "kaspa:merger")
        ledger = make_ledger({b.hash: b for b in FRACTURE + [merge]}, tips=["M"])
        daemon, broadcast = make_daemon(ledger, heal_attempts=3, heal_interval=0.0)

        for b in FRACTURE:
            await daemon.process_block(b, now=1_000.0)
        await drain_monitors(daemon)

        assert ledger.submit_transaction.await_count == 1
        tx = ledger.submit_transaction.await_args.args[0]
        assert tx.recipient == "kaspa:merger"
        assert tx.amount == 1_000

        # the merge arriving later does not trigger a second stitch
        assert await daemon.process_block(merge, now=2_000.0) is None
        assert broadcast.await_count == 1

    @pytest.mark.asyncio
    async def test_monitor_crash_is_logged(self, caplog) -> None:
        ledger = make_ledger({})
        ledger.get_block.side_effect = RuntimeError("boom")
        daemon, _ = make_daemon(ledger)
        for b in FRACTURE:
            await daemon.process_block(b, now=1_000.0)

        await asyncio.gather(*list(daemon._monitors.values()), return_exceptions=True)
        await asyncio.sleep(0)

        assert daemon.active_monitors == 0
        assert any(
            r.levelname == "WARNING" and "Healing monitor for A failed" in r.getMessage()
            for r in caplog.records
        )
