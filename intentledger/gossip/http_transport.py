"""
HTTP transport for gossip between processes.

Each message is POSTed as JSON to ``<peer>/gossip/intents``; the peer
answers ``{"reply": "ACCEPT" | "DUPLICATE" | "REJECT"}``.
"""
import logging
from typing import Any, Dict, Optional, Tuple

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..exceptions import MalformedError, TransportError
from .transport import GossipHandler, GossipMessage, GossipReply, PeerTransport

logger = logging.getLogger(__name__)

GOSSIP_PATH = "/gossip/intents"


class HttpPeerTransport(PeerTransport):
    """
    Gossip transport over HTTP(S) using a pooled ``requests`` session.

    Connection errors and 5xx responses are retried with backoff by the
    session adapter; anything still failing raises TransportError.
    """

    def __init__(
        self,
        local_name: str,
        timeout: float = 5.0,
        retry_count: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.local_name = local_name
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            retries = Retry(
                total=retry_count,
                backoff_factor=0.5,
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["POST"],
                raise_on_status=False,
                connect=retry_count,
                read=retry_count,
            )
            session.mount("http://", HTTPAdapter(max_retries=retries))
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session

    def send(self, peer: str, message: GossipMessage) -> GossipReply:
        url = f"{peer.rstrip('/')}{GOSSIP_PATH}"
        payload = encode_request(message, self.local_name)
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise TransportError(f"gossip to {peer} failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"invalid JSON reply from {peer}: {e}") from e

        try:
            return GossipReply(body.get("reply"))
        except (AttributeError, ValueError) as e:
            raise TransportError(f"unexpected reply from {peer}: {body!r}") from e

    def close(self) -> None:
        self.session.close()


def encode_request(message: GossipMessage, from_peer: str) -> Dict[str, Any]:
    return {"from_peer": from_peer, "message": message.model_dump(mode="json")}


def decode_request(payload: Any) -> Tuple[GossipMessage, str]:
    """
    Parse a POSTed gossip request body.

    Raises:
        MalformedError: If the body is not a valid gossip request
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("from_peer"), str):
        raise MalformedError("gossip request needs 'from_peer' and 'message'")
    try:
        message = GossipMessage.model_validate(payload.get("message"))
    except ValidationError as e:
        raise MalformedError(f"invalid gossip message: {e}") from e
    return message, payload["from_peer"]


def handle_request(handler: GossipHandler, payload: Any) -> Dict[str, str]:
    """
    Serve one gossip request with ``handler`` (usually ``GossipPropagator.receive``).

    Malformed bodies are answered with REJECT.
    """
    try:
        message, from_peer = decode_request(payload)
    except MalformedError as e:
        logger.debug("Rejecting malformed gossip request: %s", e)
        return {"reply": GossipReply.REJECT.value}
    return {"reply": handler(message, from_peer).value}
