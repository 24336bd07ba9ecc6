"""Stitch broadcasting — the P2P handle used by the daemon.

``setup_p2p`` starts the transport and registers the bootstrap peers;
``broadcast_stitch`` signs a stitch request with the operator key and sends it
to every known peer. Requests arriving from peers are verified, deduplicated
and relayed onward by the flooding protocol.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from stitch_node.config import StitchConfig
from stitch_node.errors import BroadcastError
from stitch_node.models import StitchMessage, StitchRequest
from stitch_node.network.flooding import FloodingConfig, FloodingProtocol
from stitch_node.network.peer import Peer
from stitch_node.network.transport import Transport
from stitch_node.wallet import Wallet

logger = logging.getLogger(__name__)


@dataclass
class StitchNetwork:
    """Transport, relay state and peer table for stitch requests."""

    node_id: str
    transport: Transport
    flooding: FloodingProtocol = field(default_factory=FloodingProtocol)
    peers: dict[str, Peer] = field(default_factory=dict)

    def add_peer(self, endpoint: str) -> Peer:
        peer = Peer.parse(endpoint)
        self.peers[peer.endpoint] = peer
        logger.info("Stitch peer added: %s", peer.endpoint)
        return peer

    async def close(self) -> None:
        await self.transport.stop()

    async def relay(self, message: StitchMessage, sender: str) -> None:
        """Forward a peer's stitch message to everyone except the sender host."""
        self.flooding.cleanup_stale()
        if not self.flooding.handle_incoming(message, sender):
            return
        forward = self.flooding.prepare_forward(message)
        targets = [ep for ep, p in self.peers.items() if p.address != sender]
        if forward.ttl > 0 and targets:
            await self.transport.broadcast(targets, forward)


async def setup_p2p(config: StitchConfig, node_id: str, serve: bool = True) -> StitchNetwork:
    """Start the stitch transport and register the configured bootstrap peers."""
    transport = Transport(host=config.p2p_host, port=config.p2p_port)
    network = StitchNetwork(
        node_id=node_id,
        transport=transport,
        flooding=FloodingProtocol(FloodingConfig()),
    )
    transport.on_message(network.relay)
    await transport.start(serve=serve)

    for endpoint in config.p2p_bootstrap_peers:
        network.add_peer(endpoint)
    return network


async def broadcast_stitch(
    network: StitchNetwork,
    weak_hash: str,
    tip_hashes: list[str],
    reward: int,
    wallet: Wallet,
) -> StitchRequest:
    """Sign a stitch request and send it to every known peer.

    Raises:
        BroadcastError: If there are peers and none of them accepted it.
    """
    request = StitchRequest(
        weak_hash=weak_hash,
        tip_hashes=list(tip_hashes),
        reward_sompi=reward,
        sender=wallet.public_key_hex,
    )
    request.signature = wallet.sign(request.signing_payload())
    message = StitchMessage(
        sender_id=network.node_id,
        ttl=network.flooding.config.default_ttl,
        request=request,
    )
    # Our own request must not be relayed back to us
    network.flooding.mark_seen(message)

    if not network.peers:
        logger.warning("No stitch peers configured; request for %s not delivered", weak_hash[:12])
        return request

    results = await network.transport.broadcast(list(network.peers), message)
    for endpoint, ok in results.items():
        network.peers[endpoint].record_delivery(ok)

    delivered = sum(results.values())
    if delivered == 0:
        raise BroadcastError(
            f"Stitch request for {weak_hash[:12]} rejected by all {len(results)} peers"
        )
    logger.info("Stitch request delivered to %d/%d peers", delivered, len(results))
    return request
