"""
Intent Pool and Gossip Propagator.
"""
from .pool import IntentPool, InsertResult, PoolEntry
from .transport import (
    GossipMessage, GossipReply, PeerTransport, LocalNetwork, LocalTransport
)
from .http_transport import HttpPeerTransport
from .propagator import GossipPropagator

__all__ = [
    'IntentPool',
    'InsertResult',
    'PoolEntry',
    'GossipMessage',
    'GossipReply',
    'PeerTransport',
    'LocalNetwork',
    'LocalTransport',
    'HttpPeerTransport',
    'GossipPropagator',
]
