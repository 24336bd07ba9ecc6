"""Detect blockDAG fractures and pay miners to merge them."""

from stitch_node.controller import AdaptiveController, ControllerConfig, Decision
from stitch_node.dag.window import Fracture, TipPolicy, WindowedDag
from stitch_node.models import BlockInfo, LedgerBlock

__all__ = [
    "AdaptiveController",
    "BlockInfo",
    "ControllerConfig",
    "Decision",
    "Fracture",
    "LedgerBlock",
    "TipPolicy",
    "WindowedDag",
]

__version__ = "0.1.0"
