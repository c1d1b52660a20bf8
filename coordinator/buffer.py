"""Pending-update queue for batched result writes."""

from __future__ import annotations

from typing import List

from .models import PendingUpdate

__all__ = ["WriteBuffer"]


class WriteBuffer:
    """Insertion-ordered queue of pending updates."""

    def __init__(self, max_items: int):
        """
        Initialize write buffer.

        Args:
            max_items: Number of queued updates that makes a flush due; also
                the largest batch a single flush takes.
        """
        self.max_items = max_items
        self.items: List[PendingUpdate] = []

    def add(self, update: PendingUpdate) -> bool:
        """
        Queue an update.

        Returns:
            True if the buffer has reached its flush size, False otherwise
        """
        self.items.append(update)
        return self.should_flush()

    def should_flush(self) -> bool:
        return len(self.items) >= self.max_items

    def take(self, limit: int | None = None) -> List[PendingUpdate]:
        """
        Remove and return up to ``limit`` of the oldest updates in one step.

        There is no await between reading and replacing the queue, so
        concurrent flushes never take the same update twice.
        """
        limit = self.max_items if limit is None else limit
        batch, self.items = self.items[:limit], self.items[limit:]
        return batch

    def requeue(self, updates: List[PendingUpdate]) -> None:
        """Put a failed batch back, unchanged, behind whatever queued meanwhile."""
        self.items.extend(updates)

    def drain(self) -> List[PendingUpdate]:
        batch, self.items = self.items, []
        return batch

    def __len__(self) -> int:
        """Return number of items in buffer."""
        return len(self.items)
