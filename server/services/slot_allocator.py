"""
Recyclable integer slot pool.

Slots are the small indices a participant (`scrN`) or a screen share (`prN`) is
displayed under. The pool always hands out the smallest free index so numbering
is reproducible across reconnects.

Usage:
    slots = SlotAllocator(3)
    index = slots.acquire()   # 0, or None when exhausted
    slots.release(index)
"""
import heapq
from typing import List, Optional


class SlotAllocator:
    """
    Min-heap backed pool of free indices in ``[0, capacity)``.

    Invariant: the union of assigned and free indices is exactly the full range
    and no index is ever free twice.
    """

    def __init__(self, capacity: int) -> None:
        """
        Args:
            capacity (int): Number of slots in the pool. Must be positive.

        Raises:
            ValueError: If capacity is not positive.
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._free: List[int] = []
        self.reset()

    def reset(self) -> None:
        """Return every slot to the pool."""
        self._free = list(range(self.capacity))
        heapq.heapify(self._free)

    def acquire(self) -> Optional[int]:
        """
        Take the smallest free slot.

        Returns:
            Optional[int]: The slot index, or None when every slot is assigned.
        """
        if not self._free:
            return None
        return heapq.heappop(self._free)

    def release(self, index: Optional[int]) -> bool:
        """
        Give a slot back to the pool.

        Out-of-range indices, None, and indices that are already free are ignored
        so a double release can never duplicate a slot.

        Args:
            index (Optional[int]): Slot previously returned by `acquire`.

        Returns:
            bool: True if the slot was returned to the pool.
        """
        if index is None or not 0 <= index < self.capacity:
            return False
        if index in self._free:
            return False
        heapq.heappush(self._free, index)
        return True

    def is_free(self, index: int) -> bool:
        return index in self._free

    @property
    def free_slots(self) -> List[int]:
        """Free indices in ascending order."""
        return sorted(self._free)

    @property
    def in_use(self) -> int:
        return self.capacity - len(self._free)

    @property
    def exhausted(self) -> bool:
        return not self._free

    def __repr__(self) -> str:
        return f"SlotAllocator(capacity={self.capacity}, free={self.free_slots})"
