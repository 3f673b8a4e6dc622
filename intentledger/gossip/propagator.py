"""
Gossip Propagator: validates incoming intents and spreads new ones.

Every neighbour has a bounded outbound queue; under overload the oldest
queued message is dropped. An intent id is never queued twice for the
same neighbour, and never sent back to the neighbour it came from.
"""
import logging
import random
import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from cachetools import TTLCache

from ..config import LedgerConfig
from ..exceptions import TransportError
from ..models import SignedIntent
from ..utils import short
from ._rate_limited_log import rate_limited_log
from .pool import InsertResult, IntentPool
from .transport import GossipMessage, GossipReply, PeerTransport

logger = logging.getLogger(__name__)


class GossipPropagator:
    """
    Gossip endpoint of one node.

    Args:
        name: This node's peer name (what neighbours see as ``from_peer``)
        pool: Intent pool fed by accepted messages
        transport: Transport used to reach neighbours
        neighbours: Initial neighbour identifiers
        config: Fan-out, queue size and dedup TTL
        rng: Random source for choosing the fan-out subset
    """

    def __init__(
        self,
        name: str,
        pool: IntentPool,
        transport: PeerTransport,
        neighbours: Iterable[str] = (),
        config: Optional[LedgerConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.name = name
        self.pool = pool
        self.transport = transport
        self.config = config or LedgerConfig()
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._neighbours: List[str] = []
        self._queues: Dict[str, Deque[GossipMessage]] = {}
        self._sent: Dict[str, TTLCache] = {}
        self.dropped = 0
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._worker: Optional[threading.Thread] = None
        for peer in neighbours:
            self.add_neighbour(peer)

    @property
    def neighbours(self) -> List[str]:
        with self._lock:
            return list(self._neighbours)

    def add_neighbour(self, peer: str) -> None:
        with self._lock:
            if peer in self._queues or peer == self.name:
                return
            self._neighbours.append(peer)
            self._queues[peer] = deque(maxlen=self.config.gossip_queue_size)
            self._sent[peer] = TTLCache(maxsize=100_000, ttl=self.config.gossip_seen_ttl_s)

    def remove_neighbour(self, peer: str) -> None:
        with self._lock:
            if peer not in self._queues:
                return
            self._neighbours.remove(peer)
            del self._queues[peer]
            del self._sent[peer]

    def queued(self, peer: str) -> int:
        with self._lock:
            queue = self._queues.get(peer)
            return len(queue) if queue is not None else 0

    def publish(self, signed: SignedIntent) -> InsertResult:
        """Insert a locally submitted intent and queue it for neighbours."""
        result = self.pool.insert(signed)
        if result == InsertResult.ACCEPTED:
            self._enqueue(GossipMessage.from_signed(signed), exclude=None)
            self._wake.set()
        return result

    def receive(self, message: GossipMessage, from_peer: str) -> GossipReply:
        """
        Handle a message from ``from_peer``.

        Signature and expiry are checked before insertion; only newly
        accepted intents are forwarded.
        """
        self._mark_sent(from_peer, message.intent_id)
        if not message.id_matches():
            rate_limited_log(
                f"Peer {from_peer} sent intent {short(message.intent_id)} whose id does not match its content",
                peer=from_peer, logger_instance=logger,
            )
            return GossipReply.REJECT

        result = self.pool.insert(message.signed_payload)
        if result == InsertResult.DUPLICATE:
            return GossipReply.DUPLICATE
        if result != InsertResult.ACCEPTED:
            rate_limited_log(
                f"Peer {from_peer} sent {result.value.lower()} intent",
                peer=from_peer, logger_instance=logger,
            )
            return GossipReply.REJECT

        self._enqueue(message, exclude=from_peer)
        self._wake.set()
        return GossipReply.ACCEPT

    def _mark_sent(self, peer: str, intent_id: str) -> None:
        with self._lock:
            sent = self._sent.get(peer)
            if sent is not None:
                sent[intent_id] = True

    def _enqueue(self, message: GossipMessage, exclude: Optional[str]) -> List[str]:
        with self._lock:
            candidates = [
                peer for peer in self._neighbours
                if peer != exclude and message.intent_id not in self._sent[peer]
            ]
            if len(candidates) > self.config.gossip_fan_out:
                candidates = self._rng.sample(candidates, self.config.gossip_fan_out)
            for peer in candidates:
                queue = self._queues[peer]
                if len(queue) == queue.maxlen:
                    self.dropped += 1
                    logger.debug("Outbound queue to %s full, dropping oldest message", peer)
                queue.append(message)
                self._sent[peer][message.intent_id] = True
        return candidates

    def flush(self) -> int:
        """
        Drain every outbound queue through the transport.

        Returns:
            Number of messages delivered
        """
        with self._lock:
            batches = {peer: list(queue) for peer, queue in self._queues.items() if queue}
            for peer in batches:
                self._queues[peer].clear()

        delivered = 0
        for peer, messages in batches.items():
            for message in messages:
                try:
                    reply = self.transport.send(peer, message)
                except TransportError as e:
                    rate_limited_log(f"Gossip to {peer} failed: {e}", peer=peer, logger_instance=logger)
                    # Allow a later retry to this peer
                    with self._lock:
                        sent = self._sent.get(peer)
                        if sent is not None:
                            sent.pop(message.intent_id, None)
                    continue
                delivered += 1
                if reply == GossipReply.REJECT:
                    logger.debug("Peer %s rejected intent %s", peer, short(message.intent_id))
        return delivered

    def start(self, interval_s: float = 0.05) -> None:
        """Start a worker thread that flushes queues when woken or every ``interval_s``."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, args=(interval_s,), name=f"gossip-{self.name}", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def _run(self, interval_s: float) -> None:
        while not self._stop.is_set():
            self._wake.wait(interval_s)
            self._wake.clear()
            try:
                self.flush()
            except Exception as e:
                logger.error("Gossip worker of %s failed to flush: %s", self.name, e)
