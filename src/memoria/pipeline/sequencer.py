"""Release out-of-order completions in admission order."""

from typing import Generic, TypeVar

T = TypeVar("T")


class OrderedRelease(Generic[T]):
    """Hands out sequence numbers and releases results as contiguous runs.

    A result completed for sequence N+1 is held back until N completes.
    Completing with None keeps the slot (for a skipped exchange) but
    releases nothing for it.
    """

    def __init__(self) -> None:
        self._next_sequence = 0
        self._next_release = 0
        self._completed: dict[int, T | None] = {}

    @property
    def admitted(self) -> int:
        """Number of sequence numbers handed out."""
        return self._next_sequence

    @property
    def waiting(self) -> int:
        """Completed results held back behind a gap; skipped slots excluded."""
        return sum(1 for item in self._completed.values() if item is not None)

    def admit(self) -> int:
        """Reserve the next sequence number."""
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    def complete(self, sequence: int, item: T | None) -> list[T]:
        """Record a completion and return every item now releasable, in order."""
        if sequence < self._next_release or sequence in self._completed:
            raise ValueError(f"Sequence {sequence} already completed")
        if sequence >= self._next_sequence:
            raise ValueError(f"Sequence {sequence} was never admitted")
        self._completed[sequence] = item

        released: list[T] = []
        while self._next_release in self._completed:
            ready = self._completed.pop(self._next_release)
            self._next_release += 1
            if ready is not None:
                released.append(ready)
        return released

    def reset(self) -> None:
        self._next_sequence = 0
        self._next_release = 0
        self._completed.clear()
