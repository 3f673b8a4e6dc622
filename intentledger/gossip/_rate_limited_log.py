"""
Rate-limited logging for noisy gossip peers.

A peer that keeps sending invalid or expired intents would otherwise
produce one warning per message. Each (peer, level, message) key is logged
at most once per TTL window.
"""
import logging
import threading
from typing import Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

# At most 1024 distinct keys, each suppressed for 60 seconds
_peer_log_cache = TTLCache(maxsize=1024, ttl=60)
_peer_log_cache_lock = threading.RLock()


def rate_limited_log(
    message: str,
    level: str = "warning",
    peer: Optional[str] = None,
    logger_instance: Optional[logging.Logger] = None
) -> bool:
    """
    Log a message unless the same one was logged recently.

    Args:
        message: Message to log
        level: Log level (debug, info, warning, error, critical)
        peer: Peer the message is about; keys are tracked per peer
        logger_instance: Logger to use (defaults to module logger)

    Returns:
        True if the message was emitted, False if it was suppressed
    """
    log_instance = logger_instance or logger
    log_method = getattr(log_instance, level.lower(), log_instance.warning)
    key = f"{peer or '-'}:{level}:{message}"

    with _peer_log_cache_lock:
        if key in _peer_log_cache:
            return False
        log_method(message)
        _peer_log_cache[key] = True
    return True


def reset() -> None:
    """Forget every suppressed key."""
    with _peer_log_cache_lock:
        _peer_log_cache.clear()
