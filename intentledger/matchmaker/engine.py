"""
Matching Engine: turns pooled intents into balanced settlement candidates.
"""
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..config import LedgerConfig
from ..gossip.pool import IntentPool, PoolEntry
from ..models import Transaction, TxReceipt
from ..utils import short
from ..vp.builtin import SETTLE_CODE
from .graph import AssetGraph, Leg, MatchSet, solve_cycle

logger = logging.getLogger(__name__)

MatchHandler = Callable[[MatchSet], Optional[bool]]


class MatchingEngine:
    """
    Greedy ring matcher over an IntentPool.

    Candidates are ranked by total volume, then by the earliest creation
    time among their intents, then by intent ids; overlapping candidates
    are skipped. Intents handed to ``on_match`` stay reserved until
    ``release`` (or a receipt for their settlement) frees them.
    """

    def __init__(
        self,
        pool: IntentPool,
        config: Optional[LedgerConfig] = None,
        on_match: Optional[MatchHandler] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.pool = pool
        self.config = config or LedgerConfig()
        self.on_match = on_match
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._reserved: Dict[str, MatchSet] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def reserved(self) -> List[str]:
        with self._lock:
            return sorted(self._reserved)

    def _eligible(self, now_ms: int):
        def check(entry: PoolEntry) -> bool:
            if entry.intent_id in self._reserved or entry.intent.is_expired(now_ms):
                return False
            return entry.intent.allow_partial or entry.filled == 0
        return check

    def find_matches(self, now_ms: Optional[int] = None) -> List[MatchSet]:
        """
        Find non-overlapping, balanced, rate-satisfying match sets.

        Does not reserve anything; see ``run_once``.
        """
        now_ms = self._clock() if now_ms is None else now_ms
        with self._lock:
            entries = list(self.pool.query(self._eligible(now_ms)))
        graph = AssetGraph(Leg(signed=e.signed, capacity=e.remaining) for e in entries)
        cycles = graph.find_cycles(self.config.max_cycle_length, self.config.max_match_candidates)

        candidates = []
        for cycle in cycles:
            match = solve_cycle(cycle)
            if match is not None and match.is_balanced() and match.rates_satisfied():
                candidates.append(match)
        candidates.sort(key=MatchSet.priority)

        chosen: List[MatchSet] = []
        used = set()
        for match in candidates:
            if used.intersection(match.intent_ids):
                continue
            used.update(match.intent_ids)
            chosen.append(match)
        logger.debug(
            "Matching round: %d intents, %d cycles, %d match sets",
            len(entries), len(cycles), len(chosen)
        )
        return chosen

    def run_once(self, now_ms: Optional[int] = None) -> List[MatchSet]:
        """Find matches, reserve their intents and hand them to ``on_match``."""
        matches = self.find_matches(now_ms)
        emitted = []
        for match in matches:
            with self._lock:
                if any(i in self._reserved for i in match.intent_ids):
                    continue
                for intent_id in match.intent_ids:
                    self._reserved[intent_id] = match
            logger.info(
                "Matched ring of %d intents (%s), volume %d",
                len(match.fills), ", ".join(short(i) for i in match.intent_ids), match.volume
            )
            if self.on_match is not None:
                try:
                    taken = self.on_match(match)
                except Exception as e:
                    logger.error("Match handler failed, releasing intents: %s", e)
                    self.release(match.intent_ids)
                    continue
                if taken is False:
                    self.release(match.intent_ids)
                    continue
            emitted.append(match)
        return emitted

    def release(self, intent_ids: Iterable[str]) -> None:
        with self._lock:
            for intent_id in intent_ids:
                self._reserved.pop(intent_id, None)

    def on_receipt(self, tx: Transaction, receipt: TxReceipt) -> None:
        """
        Receipt listener: settled or rejected rings free their reservations.

        After a rejection (typically STALE_MATCH) the next round rebuilds
        from the current pool.
        """
        if tx.code != SETTLE_CODE:
            return
        intent_ids = [raw.get("intent_id") for raw in tx.data.get("fills", []) if isinstance(raw, dict)]
        self.release(i for i in intent_ids if i)
        if not receipt.success:
            logger.info("Settlement %s rejected (%s), rematching", short(tx.tx_id), receipt.error_code)
            self.notify()

    def notify(self, *args) -> None:
        """Wake the background matcher; usable as a pool listener."""
        self._wake.set()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="matching-engine", daemon=True)
        self._worker.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.config.match_interval_s)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self.run_once()
            except Exception as e:
                logger.error("Matching round failed: %s", e)
