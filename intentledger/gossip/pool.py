"""
Intent Pool: the node-local set of valid, unexpired, unfilled intents.
"""
import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional

from cachetools import TLRUCache

from ..config import LedgerConfig
from ..models import IntentState, IntentStatus, SignedIntent
from ..utils import short

logger = logging.getLogger(__name__)

StatusListener = Callable[[IntentStatus], None]


class InsertResult(str, Enum):
    ACCEPTED = "ACCEPTED"
    DUPLICATE = "DUPLICATE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class PoolEntry:
    """A pooled intent and how much of its give side is already consumed."""
    signed: SignedIntent
    received_ms: int
    filled: int = 0

    @property
    def intent_id(self) -> str:
        return self.signed.intent_id

    @property
    def intent(self):
        return self.signed.intent

    @property
    def remaining(self) -> int:
        return self.signed.intent.give_max - self.filled


class _Finished(NamedTuple):
    status: IntentStatus
    expiry_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class IntentPool:
    """
    Thread-safe intent pool.

    An intent is in the pool at most once. Removed intents (filled,
    cancelled, expired) are remembered for ``gossip_seen_ttl_s`` and never
    before the intent itself expires, so a re-gossiped copy is reported as
    a duplicate instead of re-entering.
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        max_finished: int = 100_000,
    ):
        self.config = config or LedgerConfig()
        self._clock = clock or _now_ms
        self._entries: Dict[str, PoolEntry] = {}
        self._finished = TLRUCache(
            maxsize=max_finished,
            ttu=self._forget_at,
            timer=lambda: self._clock() / 1000.0,
        )
        self._listeners: List[StatusListener] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, intent_id: str) -> bool:
        with self._lock:
            return intent_id in self._entries

    def _forget_at(self, _intent_id: str, finished: _Finished, now: float) -> float:
        # Seconds on the pool clock
        return max(now + self.config.gossip_seen_ttl_s, finished.expiry_ms / 1000.0)

    def subscribe(self, listener: StatusListener) -> None:
        """Register a callback for every status change of any intent."""
        with self._lock:
            self._listeners.append(listener)

    def seen(self, intent_id: str) -> bool:
        """True if the intent is pooled or was recently removed."""
        with self._lock:
            return intent_id in self._entries or intent_id in self._finished

    def insert(self, signed: SignedIntent, now_ms: Optional[int] = None) -> InsertResult:
        """
        Validate and add a signed intent.

        Args:
            signed: The signed intent
            now_ms: Current time, defaults to the pool clock

        Returns:
            InsertResult describing what happened
        """
        now_ms = self._clock() if now_ms is None else now_ms
        intent_id = signed.intent_id
        with self._lock:
            if intent_id in self._entries or intent_id in self._finished:
                return InsertResult.DUPLICATE
        if not signed.verify():
            return InsertResult.INVALID_SIGNATURE
        if signed.intent.is_expired(now_ms):
            return InsertResult.EXPIRED
        with self._lock:
            if intent_id in self._entries or intent_id in self._finished:
                return InsertResult.DUPLICATE
            self._entries[intent_id] = PoolEntry(signed=signed, received_ms=now_ms)
        logger.info("Pooled intent %s from %s", short(intent_id), short(signed.intent.owner, 10))
        self._emit(IntentStatus(intent_id, IntentState.PENDING, signed.intent.give_max))
        return InsertResult.ACCEPTED

    def get(self, intent_id: str) -> Optional[PoolEntry]:
        with self._lock:
            return self._entries.get(intent_id)

    def query(self, predicate: Optional[Callable[[PoolEntry], bool]] = None) -> Iterator[PoolEntry]:
        """
        Lazily iterate over a snapshot of the pool.

        Intents inserted or removed after the call do not disturb the
        iteration; call again for a fresh view.
        """
        with self._lock:
            snapshot = sorted(self._entries.values(), key=lambda e: (e.intent.created_ms, e.intent_id))
        for entry in snapshot:
            if predicate is None or predicate(entry):
                yield entry

    def remove(self, intent_id: str, state: IntentState = IntentState.CANCELLED, reason: str = "") -> bool:
        """
        Remove an intent and remember its final status.

        Returns:
            True if the intent was pooled
        """
        with self._lock:
            entry = self._entries.pop(intent_id, None)
            if entry is None:
                return False
            status = IntentStatus(intent_id, state, 0, reason)
            self._finished[intent_id] = _Finished(status, entry.intent.expiry_ms)
        logger.debug("Removed intent %s: %s %s", short(intent_id), state.value, reason)
        self._emit(status)
        return True

    def record_fill(self, intent_id: str, give_amount: int, total_filled: Optional[int] = None) -> Optional[IntentStatus]:
        """
        Account for a settled fill of ``give_amount``.

        ``total_filled`` (the committed fill counter) takes precedence when
        given. All-or-nothing intents are always fully consumed.
        """
        with self._lock:
            entry = self._entries.get(intent_id)
            if entry is None:
                return None
            intent = entry.intent
            filled = total_filled if total_filled is not None else entry.filled + give_amount
            if not intent.allow_partial:
                filled = intent.give_max
            filled = min(filled, intent.give_max)
            if filled >= intent.give_max:
                del self._entries[intent_id]
                status = IntentStatus(intent_id, IntentState.FILLED, 0)
                self._finished[intent_id] = _Finished(status, intent.expiry_ms)
            else:
                self._entries[intent_id] = replace(entry, filled=filled)
                status = IntentStatus(intent_id, IntentState.PARTIALLY_FILLED, intent.give_max - filled)
        logger.info("Intent %s %s", short(intent_id), status.state.value)
        self._emit(status)
        return status

    def cancel(self, intent_id: str, reason: str = "cancelled by owner") -> bool:
        return self.remove(intent_id, IntentState.CANCELLED, reason)

    def expire(self, now_ms: Optional[int] = None) -> List[str]:
        """Remove every intent whose expiry has passed. Returns their ids."""
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            expired = [i for i, e in self._entries.items() if e.intent.is_expired(now_ms)]
        removed = [i for i in expired if self.remove(i, IntentState.EXPIRED, "expired")]
        if removed:
            logger.debug("Expired %d intents", len(removed))
        return removed

    def status(self, intent_id: str) -> Optional[IntentStatus]:
        """Current status, or None if the intent was never seen (or forgotten)."""
        with self._lock:
            entry = self._entries.get(intent_id)
            if entry is not None:
                if entry.filled:
                    return IntentStatus(intent_id, IntentState.PARTIALLY_FILLED, entry.remaining)
                return IntentStatus(intent_id, IntentState.PENDING, entry.remaining)
            finished = self._finished.get(intent_id)
            return finished.status if finished is not None else None

    def _emit(self, status: IntentStatus) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception as e:
                logger.error("Intent status listener failed for %s: %s", short(status.intent_id), e)
