"""
FIFO queue of sessions waiting for a human agent.
"""
from typing import Dict, Iterator, List, Optional


class WaitingQueue:
    """Insertion-ordered set of session ids."""

    def __init__(self):
        self._order: Dict[str, None] = {}

    def enqueue(self, session_id: str) -> int:
        """Add a session (no-op if already queued) and return its 1-indexed position."""
        if session_id not in self._order:
            self._order[session_id] = None
        return self.position_of(session_id)

    def dequeue(self, session_id: str) -> bool:
        """Remove a session; True if it was queued."""
        return self._order.pop(session_id, False) is None

    def position_of(self, session_id: str) -> Optional[int]:
        """1-indexed position, or None when not queued."""
        for index, queued in enumerate(self._order, start=1):
            if queued == session_id:
                return index
        return None

    def length(self) -> int:
        """Number of waiting sessions."""
        return len(self._order)

    def snapshot(self) -> List[str]:
        """Session ids in queue order."""
        return list(self._order)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._order

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return self.length()
