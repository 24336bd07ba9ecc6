"""Windowed blockDAG store and selected-chain rules."""

from stitch_node.dag.selection import HeaviestParentRule
from stitch_node.dag.window import Fracture, TipPolicy, WindowedDag

__all__ = ["Fracture", "HeaviestParentRule", "TipPolicy", "WindowedDag"]
