"""Ordered, acknowledged delivery of tunnel packets over HTTP exchanges."""

from __future__ import annotations

__all__ = ["PacketLossError", "InboundSequencer", "OutboundSequencer"]


class PacketLossError(RuntimeError):
    """Raised when a packet arrives ahead of one that never came."""

    def __init__(self, ack: int, expected: int) -> None:
        super().__init__(f"packet {ack:#x} arrived while waiting for {expected:#x}")
        self.ack = ack
        self.expected = expected


class InboundSequencer:
    """Releases received packets in acknowledgement order."""

    def __init__(self) -> None:
        self.expected = 0
        self.highest = 0
        self._held: dict[int, bytes] = {}

    def accept(self, ack: int, payload: bytes) -> list[bytes]:
        """Record packet ``ack`` and return the payloads now ready, in order.

        A packet that was already delivered is ignored. A packet from the
        future is held back and :class:`PacketLossError` is raised.
        """
        if ack >= self.highest:
            self.highest = ack + 1

        if ack == self.expected:
            ready = [bytes(payload)]
            self.expected += 1
            while self.expected < self.highest:
                held = self._held.pop(self.expected, None)
                if held is None:
                    break
                ready.append(held)
                self.expected += 1
            return ready

        if ack > self.expected:
            self._held.setdefault(ack, bytes(payload))
            raise PacketLossError(ack, self.expected)

        return []


class OutboundSequencer:
    """Keeps sent packets until the peer confirms them."""

    def __init__(self) -> None:
        self.acked = 0
        self.next_ack = 0
        self._packets: dict[int, bytes] = {}

    def has_unacked(self) -> bool:
        """Whether a packet is still waiting for confirmation."""
        return self.acked != self.next_ack

    def current(self) -> tuple[int, bytes]:
        """Return the oldest unconfirmed packet and its number."""
        if not self.has_unacked():
            raise LookupError("no packet is waiting for confirmation")
        return self.acked, self._packets[self.acked]

    def push(self, payload: bytes) -> int:
        """Queue a new packet and return its number."""
        ack = self.next_ack
        self._packets[ack] = bytes(payload)
        self.next_ack += 1
        return ack

    def acknowledge(self, ack: int) -> bool:
        """Handle the peer saying it expects packet ``ack`` next.

        Returns ``True`` when this confirmed the oldest packet.
        """
        if ack == self.acked + 1 and self.has_unacked():
            del self._packets[self.acked]
            self.acked = ack
            return True
        return False