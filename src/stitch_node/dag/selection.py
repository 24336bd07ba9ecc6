"""Selected-chain rules: which tip is "best" and which parent is "selected".

The exact rule belongs to the underlying consensus protocol; the window only
sees a partial view of it. Rules are plain objects so the store can be given a
different one without touching the fracture logic.
"""

from __future__ import annotations

import networkx as nx

from stitch_node.models import BlockInfo


class HeaviestParentRule:
    """Prefer the heaviest block, breaking ties by the smallest hash.

    The best tip is the heaviest leaf of the window (a block with no resident
    children). The selected parent of a block is its heaviest resident parent.
    """

    @staticmethod
    def _rank(info: BlockInfo) -> tuple[int, str]:
        return (-info.blue_score, info.hash)

    def best_tip(self, graph: nx.DiGraph) -> str | None:
        leaves = [n for n in graph.nodes if graph.out_degree(n) == 0]
        if not leaves:
            return None
        return min(leaves, key=lambda n: self._rank(graph.nodes[n]["info"]))

    def selected_parent(self, graph: nx.DiGraph, node: str) -> str | None:
        parents = list(graph.predecessors(node))
        if not parents:
            return None
        return min(parents, key=lambda n: self._rank(graph.nodes[n]["info"]))
