"""
Gossip wire messages and peer transports.

This module defines the message exchanged between peers, the abstract
transport a propagator sends through, and an in-process network used by
tests and single-process deployments.
"""
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ..exceptions import TransportError
from ..models import SignedIntent

logger = logging.getLogger(__name__)


class GossipReply(str, Enum):
    ACCEPT = "ACCEPT"
    DUPLICATE = "DUPLICATE"
    REJECT = "REJECT"


class GossipMessage(BaseModel):
    """
    Wire message ``{intent_id, signed_payload, expiry_ms}``.

    The receiver recomputes the id from the payload; a message whose id
    does not match its content is rejected.
    """
    intent_id: str
    signed_payload: SignedIntent
    expiry_ms: int

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_signed(cls, signed: SignedIntent) -> "GossipMessage":
        return cls(intent_id=signed.intent_id, signed_payload=signed, expiry_ms=signed.intent.expiry_ms)

    def id_matches(self) -> bool:
        return (
            self.signed_payload.intent_id == self.intent_id
            and self.signed_payload.intent.expiry_ms == self.expiry_ms
        )


# (message, from_peer) -> reply
GossipHandler = Callable[[GossipMessage, str], GossipReply]


class PeerTransport(ABC):
    """
    Abstract base class for gossip transports.

    Implementations deliver one message to one peer and return the peer's
    reply.
    """

    @abstractmethod
    def send(self, peer: str, message: GossipMessage) -> GossipReply:
        """
        Deliver ``message`` to ``peer``.

        Args:
            peer: Peer identifier (name or base URL)
            message: The gossip message

        Returns:
            The peer's reply

        Raises:
            TransportError: If the peer cannot be reached
        """
        pass

    def close(self) -> None:
        """Release any resources held by the transport."""
        pass


class LocalNetwork:
    """In-process registry of gossip handlers by peer name."""

    def __init__(self):
        self._handlers: Dict[str, GossipHandler] = {}
        self._lock = threading.RLock()

    def register(self, name: str, handler: GossipHandler) -> None:
        with self._lock:
            self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        with self._lock:
            self._handlers.pop(name, None)

    def handler(self, name: str) -> Optional[GossipHandler]:
        with self._lock:
            return self._handlers.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def transport(self, local_name: str) -> "LocalTransport":
        return LocalTransport(self, local_name)


class LocalTransport(PeerTransport):
    """Delivers messages by calling the receiving peer's handler directly."""

    def __init__(self, network: LocalNetwork, local_name: str):
        self.network = network
        self.local_name = local_name

    def send(self, peer: str, message: GossipMessage) -> GossipReply:
        handler = self.network.handler(peer)
        if handler is None:
            raise TransportError(f"peer {peer} is not reachable from {self.local_name}")
        return handler(message, self.local_name)
