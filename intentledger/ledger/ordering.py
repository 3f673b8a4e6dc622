"""
Ordering service interface and an in-memory FIFO block builder.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from ..guard import Commitment
from ..models import BlockInfo, Transaction

logger = logging.getLogger(__name__)

OrderedItem = Union[Commitment, Transaction]


@dataclass(frozen=True)
class Block:
    """A totally ordered batch of commitments and transactions."""
    height: int
    timestamp_ms: int
    items: Tuple[OrderedItem, ...] = field(default_factory=tuple)

    @property
    def info(self) -> BlockInfo:
        return BlockInfo(height=self.height, timestamp_ms=self.timestamp_ms)


class OrderingService(ABC):
    """
    Abstract interface to the consensus / ordering layer.

    The ledger only needs a total order of submitted items, delivered in
    blocks with strictly increasing heights.
    """

    @abstractmethod
    def submit(self, item: OrderedItem) -> None:
        """
        Enqueue an item for ordering.

        Args:
            item: A Commitment or a Transaction
        """
        pass

    @abstractmethod
    def next_block(self) -> Optional[Block]:
        """
        Cut the next block.

        Returns:
            The next Block, or None when the service has nothing to deliver
        """
        pass


class InMemoryOrderingService(OrderingService):
    """
    FIFO ordering for a single process.

    Every call to ``next_block`` cuts a block from everything submitted so
    far (up to ``max_block_items``). Empty blocks are produced when
    ``allow_empty`` is set, which lets time advance for reveal delays and
    expiries.
    """

    def __init__(
        self,
        max_block_items: int = 1000,
        allow_empty: bool = True,
        clock: Optional[Callable[[], int]] = None,
        start_height: int = 1,
    ):
        self.max_block_items = max_block_items
        self.allow_empty = allow_empty
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._queue = deque()
        self._height = start_height - 1
        self._lock = threading.Lock()

    @property
    def height(self) -> int:
        """Height of the last block cut (0 before the first one)."""
        return self._height

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def submit(self, item: OrderedItem) -> None:
        if not isinstance(item, (Commitment, Transaction)):
            raise TypeError(f"cannot order {type(item).__name__}")
        with self._lock:
            self._queue.append(item)

    def next_block(self) -> Optional[Block]:
        with self._lock:
            if not self._queue and not self.allow_empty:
                return None
            items: List[OrderedItem] = []
            while self._queue and len(items) < self.max_block_items:
                items.append(self._queue.popleft())
            self._height += 1
            block = Block(height=self._height, timestamp_ms=self._clock(), items=tuple(items))
        logger.debug("Cut block %d with %d items", block.height, len(block.items))
        return block
