"""Choosing how much of each session's pending data goes into one upload."""

from __future__ import annotations

from collections.abc import Mapping

from .balance import balance
from .protocol import WRITE_HEAD
from .sessionbuffer import SessionBuffer

__all__ = ["StarvationError", "WRITE_MESSAGE_OVERHEAD", "MIN_SHARE", "plan_writes"]

WRITE_MESSAGE_OVERHEAD = 1 + WRITE_HEAD.size
MIN_SHARE = 32


class StarvationError(RuntimeError):
    """Raised when a packet has no room left to carry session data fairly."""


def plan_writes(
    pending: Mapping[int, SessionBuffer],
    buffered: int,
    max_size: int,
) -> list[tuple[int, bytes]]:
    """Take data from the sessions' buffers to fill one packet.

    ``buffered`` is the number of bytes already queued in the packet and
    ``max_size`` the packet limit. Returns ``(session_id, data)`` pairs in
    the mapping's order; the taken bytes are removed from the buffers.
    """
    waiting = [(session_id, buf) for session_id, buf in pending.items() if len(buf)]
    if not waiting:
        return []

    size_guess = buffered + WRITE_MESSAGE_OVERHEAD * len(waiting)
    if size_guess > max_size:
        raise StarvationError("no room for session writes (type0)")
    budget = max_size - size_guess
    if budget // len(waiting) < MIN_SHARE:
        raise StarvationError("too little room per session (type1)")

    shares = balance([len(buf) for _, buf in waiting], budget)

    writes: list[tuple[int, bytes]] = []
    for (session_id, buf), share in zip(waiting, shares):
        data = _collect(buf, share)
        if not data:
            break
        writes.append((session_id, data))
    return writes


def _collect(buffer: SessionBuffer, wanted: int) -> bytes:
    parts = []
    got = 0
    while got < wanted:
        chunk = buffer.take(wanted - got)
        if not chunk:
            break
        parts.append(chunk)
        got += len(chunk)
    return b"".join(parts)