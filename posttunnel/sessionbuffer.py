"""Block-based byte queue holding data waiting to be tunnelled."""

from __future__ import annotations

from collections import deque

__all__ = ["BLOCK_SIZE", "SessionBuffer"]

BLOCK_SIZE = 0x200


class SessionBuffer:
    """Queue of bytes stored in fixed-size blocks.

    ``take`` never returns data spanning two blocks.
    """

    def __init__(self) -> None:
        self._blocks: deque[bytearray] = deque()
        self._first_index = 0
        self._total = 0

    def push(self, data: bytes) -> None:
        """Append ``data`` to the end of the queue."""
        view = memoryview(bytes(data))
        if not view:
            return
        if not self._blocks:
            self._first_index = 0
        elif (self._first_index + self._total) % BLOCK_SIZE:
            last = self._blocks[-1]
            room = BLOCK_SIZE - len(last)
            last += view[:room]
            self._total += min(room, len(view))
            view = view[room:]
        while view:
            block = bytearray(view[:BLOCK_SIZE])
            self._blocks.append(block)
            self._total += len(block)
            view = view[BLOCK_SIZE:]

    def take(self, wanted: int) -> bytes:
        """Remove and return up to ``wanted`` bytes from one block.

        Returns ``b""`` when nothing is queued or ``wanted`` is zero.
        """
        while self._blocks:
            if self._first_index == BLOCK_SIZE:
                self._blocks.popleft()
                self._first_index = 0
                continue
            available = min(BLOCK_SIZE - self._first_index, self._total)
            count = min(wanted, available)
            if count <= 0:
                return b""
            block = self._blocks[0]
            start = self._first_index
            self._first_index += count
            self._total -= count
            return bytes(block[start : start + count])
        return b""

    def __len__(self) -> int:
        return self._total