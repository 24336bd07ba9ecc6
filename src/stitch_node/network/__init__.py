"""P2P layer for broadcasting and relaying signed stitch requests."""

from stitch_node.network.flooding import FloodingConfig, FloodingProtocol
from stitch_node.network.peer import Peer, PeerState
from stitch_node.network.stitch import StitchNetwork, broadcast_stitch, setup_p2p
from stitch_node.network.transport import Transport

__all__ = [
    "FloodingConfig",
    "FloodingProtocol",
    "Peer",
    "PeerState",
    "StitchNetwork",
    "Transport",
    "broadcast_stitch",
    "setup_p2p",
]
