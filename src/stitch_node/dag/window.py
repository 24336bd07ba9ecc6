"""Windowed DAG — a bounded, in-memory view of the most recent blocks.

Blocks enter in arrival order and leave strictly first-in first-out once the
window is full, whatever their weight or position in the graph. Edges are only
ever drawn between resident blocks: a parent that was evicted, or never seen,
simply contributes no edge.

A "fracture" is a block with two or more children whose consensus weights have
all drifted at least ``min_delta`` away from it. Among fractures the most
central one (betweenness centrality over the whole window) wins.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

import networkx as nx

from stitch_node.dag.selection import HeaviestParentRule
from stitch_node.models import BlockInfo, LedgerBlock

logger = logging.getLogger(__name__)


class TipPolicy(str, Enum):
    """Which children of a fracture point are offered as merge tips."""

    ALL = "all"  # every current child
    LEAVES = "leaves"  # only children that are still window leaves


@dataclass(frozen=True)
class Fracture:
    """A weak block and the divergent tips that should be merged."""

    weak: BlockInfo
    tips: list[BlockInfo] = field(default_factory=list)
    min_delta: int = 0
    centrality: float = 0.0

    @property
    def tip_hashes(self) -> list[str]:
        return [t.hash for t in self.tips]


class WindowedDag:
    """Bounded blockDAG with FIFO eviction and fracture detection."""

    def __init__(
        self,
        capacity: int,
        chain_rule: HeaviestParentRule | None = None,
        tip_policy: TipPolicy = TipPolicy.ALL,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"Window capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self.chain_rule = chain_rule or HeaviestParentRule()
        self.tip_policy = TipPolicy(tip_policy)
        self.graph = nx.DiGraph()
        self._order: deque[str] = deque()
        self._seq: dict[str, int] = {}  # hash -> insertion sequence number
        self._counter = itertools.count()

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    def __contains__(self, block_hash: object) -> bool:
        return block_hash in self.graph

    @property
    def edge_count(self) -> int:
        return self.graph.number_of_edges()

    def hashes(self) -> list[str]:
        """Resident block hashes, oldest first."""
        return list(self._order)

    def get(self, block_hash: str) -> BlockInfo | None:
        if block_hash not in self.graph:
            return None
        return self.graph.nodes[block_hash]["info"]

    def children(self, block_hash: str) -> list[str]:
        """Resident children of a block in insertion order."""
        if block_hash not in self.graph:
            return []
        return sorted(self.graph.successors(block_hash), key=self._seq.__getitem__)

    def add_block(self, block: BlockInfo | LedgerBlock) -> bool:
        """Insert a block, evicting the oldest one if the window is full.

        Returns:
            True if the block was inserted, False if it was already resident.
        """
        info = block.info if isinstance(block, LedgerBlock) else block
        if info.hash in self.graph:
            return False

        if len(self._order) >= self.capacity:
            oldest = self._order.popleft()
            self.graph.remove_node(oldest)
            del self._seq[oldest]
            logger.debug("Evicted %s from window", oldest[:12])

        self.graph.add_node(info.hash, info=info)
        self._seq[info.hash] = next(self._counter)
        self._order.append(info.hash)

        for parent in info.parents:
            if parent != info.hash and parent in self.graph:
                self.graph.add_edge(parent, info.hash)
        return True

    def find_fracture(self, min_delta: int) -> Fracture | None:
        """Find the most central block whose children all diverge by >= min_delta.

        Candidates need at least two resident children. A candidate's delta is
        the *minimum* absolute weight difference to any of its children.
        Ordering: highest betweenness centrality, then smallest delta, then
        earliest insertion.
        """
        if self.graph.number_of_nodes() == 0:
            return None

        centrality = nx.betweenness_centrality(self.graph)
        best: tuple[float, int, int] | None = None
        best_node = ""
        best_children: list[str] = []

        for node in self._order:
            children = self.children(node)
            if len(children) < 2:
                continue
            weight = self.graph.nodes[node]["info"].blue_score
            delta = min(
                abs(weight - self.graph.nodes[c]["info"].blue_score) for c in children
            )
            if delta < min_delta:
                continue
            key = (-centrality[node], delta, self._seq[node])
            if best is None or key < best:
                best = key
                best_node = node
                best_children = children

        if best is None:
            return None

        tips = self._select_tips(best_children)
        return Fracture(
            weak=self.graph.nodes[best_node]["info"],
            tips=[self.graph.nodes[c]["info"] for c in tips],
            min_delta=best[1],
            centrality=-best[0],
        )

    def _select_tips(self, children: list[str]) -> list[str]:
        if self.tip_policy is TipPolicy.LEAVES:
            leaves = [c for c in children if self.graph.out_degree(c) == 0]
            if len(leaves) >= 2:
                return leaves
        return children

    def selected_chain(self) -> list[str]:
        """Hashes on the selected chain, from the best tip back into the window."""
        chain: list[str] = []
        node = self.chain_rule.best_tip(self.graph)
        while node is not None:
            chain.append(node)
            node = self.chain_rule.selected_parent(self.graph, node)
        return chain

    def is_in_selected_chain(self, block_hash: str) -> bool:
        """Whether a resident block lies on the window's selected chain."""
        if block_hash not in self.graph:
            return False
        return block_hash in self.selected_chain()
