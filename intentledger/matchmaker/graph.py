"""
Asset graph and cycle solving for the Matching Engine.

Intents are edges ``give_asset -> want_asset`` of a directed multigraph.
A simple cycle is a trade ring: every participant gives its asset to the
participant before it and receives from the one after it.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..models import Fill, SignedIntent, Transaction
from ..utils import short
from ..vp.builtin import SETTLE_CODE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Leg:
    """One edge of the graph: an intent and how much it can still give."""
    signed: SignedIntent
    capacity: int

    @property
    def intent(self):
        return self.signed.intent

    @property
    def intent_id(self) -> str:
        return self.signed.intent_id


Cycle = Tuple[Leg, ...]


@dataclass(frozen=True)
class MatchSet:
    """
    A balanced ring of fills ready to become a ``settle_match`` transaction.

    ``fills[j]`` gives to the owner of ``fills[j-1]`` and receives what
    ``fills[j+1]`` gives.
    """
    fills: Tuple[Fill, ...]
    intents: Dict[str, SignedIntent] = field(hash=False, compare=False)

    @property
    def intent_ids(self) -> Tuple[str, ...]:
        return tuple(f.intent_id for f in self.fills)

    @property
    def volume(self) -> int:
        return sum(f.give_amount for f in self.fills)

    @property
    def earliest_created_ms(self) -> int:
        return min(self.intents[i].intent.created_ms for i in self.intent_ids)

    def priority(self) -> Tuple:
        return (-self.volume, self.earliest_created_ms, tuple(sorted(self.intent_ids)))

    def is_balanced(self) -> bool:
        """Sum given equals sum received, per asset."""
        given: Dict[str, int] = defaultdict(int)
        received: Dict[str, int] = defaultdict(int)
        for fill in self.fills:
            given[fill.give_asset] += fill.give_amount
            received[fill.receive_asset] += fill.receive_amount
        return dict(given) == dict(received)

    def rates_satisfied(self) -> bool:
        """Every participant receives at least its intent's minimum for what it gives."""
        for fill in self.fills:
            intent = self.intents[fill.intent_id].intent
            if fill.give_amount > intent.give_max:
                return False
            if fill.receive_amount < intent.min_receive(fill.give_amount):
                return False
        return True

    def to_transaction(self, submitter: str, nonce: int = 0) -> Transaction:
        """Build the unsigned, unsealed settlement transaction."""
        return Transaction(
            code=SETTLE_CODE,
            data={
                "fills": [f.model_dump(mode="json") for f in self.fills],
                "intents": {i: self.intents[i].model_dump(mode="json") for i in self.intent_ids},
            },
            submitter=submitter,
            nonce=nonce,
        )


class AssetGraph:
    """Directed multigraph of assets built from a pool snapshot."""

    def __init__(self, legs: Iterable[Leg]):
        self._edges: Dict[str, List[Leg]] = defaultdict(list)
        count = 0
        for leg in legs:
            if leg.capacity <= 0:
                continue
            self._edges[leg.intent.give_asset].append(leg)
            count += 1
        for edges in self._edges.values():
            edges.sort(key=lambda leg: (leg.intent.created_ms, leg.intent_id))
        self.edge_count = count

    @property
    def assets(self) -> List[str]:
        return sorted(self._edges)

    def edges_from(self, asset: str) -> List[Leg]:
        return list(self._edges.get(asset, ()))

    def find_cycles(self, max_length: int, limit: int) -> List[Cycle]:
        """
        Bounded DFS for simple cycles (no asset and no intent repeated).

        Cycles are rotated to start at their smallest intent id and
        de-duplicated; at most ``limit`` are returned.
        """
        found: List[Cycle] = []
        seen: Set[Tuple[str, ...]] = set()

        def dfs(start: str, asset: str, path: List[Leg], visited: Set[str]) -> bool:
            for leg in self._edges.get(asset, ()):
                want = leg.intent.want_asset
                if want == start:
                    cycle = _canonical(path + [leg])
                    key = tuple(l.intent_id for l in cycle)
                    if key not in seen:
                        seen.add(key)
                        found.append(cycle)
                        if len(found) >= limit:
                            return True
                    continue
                if want in visited or len(path) + 1 >= max_length:
                    continue
                visited.add(want)
                path.append(leg)
                done = dfs(start, want, path, visited)
                path.pop()
                visited.discard(want)
                if done:
                    return True
            return False

        for start in self.assets:
            if dfs(start, start, [], {start}):
                break
        return found


def _canonical(legs: Sequence[Leg]) -> Cycle:
    pivot = min(range(len(legs)), key=lambda i: legs[i].intent_id)
    return tuple(legs[pivot:]) + tuple(legs[:pivot])


def _propagate(cycle: Cycle, first: int) -> Optional[List[int]]:
    """Minimum gives for every leg when the first leg gives ``first``; None if a capacity is exceeded."""
    gives = [first]
    for j in range(len(cycle) - 1):
        need = cycle[j].intent.min_receive(gives[j])
        if need > cycle[j + 1].capacity:
            return None
        gives.append(need)
    return gives


def solve_cycle(cycle: Cycle) -> Optional[MatchSet]:
    """
    Compute integer fills for a ring, or None if it cannot clear.

    The first leg's give is the largest value for which every later leg,
    giving exactly what its predecessor needs, stays within capacity. The
    ring clears when the last leg's need is covered by the first leg's
    give; any surplus goes to the last participant.
    """
    if len(cycle) < 2:
        return None
    low, high = 1, cycle[0].capacity
    if high < 1 or _propagate(cycle, low) is None:
        return None
    while low < high:
        mid = (low + high + 1) // 2
        if _propagate(cycle, mid) is None:
            high = mid - 1
        else:
            low = mid
    gives = _propagate(cycle, low)
    if cycle[-1].intent.min_receive(gives[-1]) > gives[0]:
        logger.debug("Ring %s does not close", "->".join(short(l.intent_id) for l in cycle))
        return None

    k = len(cycle)
    fills = []
    for j, leg in enumerate(cycle):
        intent = leg.intent
        fills.append(Fill(
            intent_id=leg.intent_id,
            owner=intent.owner,
            give_asset=intent.give_asset,
            give_amount=gives[j],
            receive_asset=intent.want_asset,
            receive_amount=gives[(j + 1) % k],
            recipient=cycle[j - 1].intent.owner,
        ))
    return MatchSet(fills=tuple(fills), intents={leg.intent_id: leg.signed for leg in cycle})
