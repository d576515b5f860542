"""Decoding of the messages the server packs into one downloaded packet."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from .protocol import (
    CONNECT_ANSWER_HEAD,
    DNS_HEAD,
    MAX_DNS_PAYLOAD,
    SESSION_HEAD,
    WRITE_HEAD,
    ConnectResult,
    ProtocolError,
    ServerCommand,
)

__all__ = [
    "ConnectAnswer",
    "DropConnection",
    "WriteData",
    "DnsReply",
    "ServerMessage",
    "iter_server_messages",
]


@dataclass(frozen=True)
class ConnectAnswer:
    """The server's outcome of a connect request."""

    session_id: int
    result: int

    @property
    def success(self) -> bool:
        return self.result == ConnectResult.SUCCESS


@dataclass(frozen=True)
class DropConnection:
    """The server closed the remote end of a session."""

    session_id: int


@dataclass(frozen=True)
class WriteData:
    """Bytes the remote end of a session sent."""

    session_id: int
    data: bytes


@dataclass(frozen=True)
class DnsReply:
    """Answer to a DNS query, without its transaction id."""

    dns_id: int
    data: bytes


ServerMessage = ConnectAnswer | DropConnection | WriteData | DnsReply


def _take(data: bytes, pos: int, size: int) -> tuple[int, bytes | None]:
    end = pos + size
    if end > len(data):
        return len(data), None
    return end, data[pos:end]


def iter_server_messages(data: bytes) -> Iterator[ServerMessage]:
    """Yield the messages held in one packet from the server.

    Empty writes and empty DNS replies are skipped. A write cut short by the
    end of the packet yields the part that is present; any other message cut
    short ends the iteration. An unknown command or an oversized DNS reply
    raises :class:`ProtocolError` when it is reached.
    """
    data = bytes(data)
    pos = 0
    while pos < len(data):
        command = data[pos]
        pos += 1
        if command == ServerCommand.CONNECT_ANSWER:
            pos, raw = _take(data, pos, CONNECT_ANSWER_HEAD.size)
            if raw is None:
                return
            session_id, result = CONNECT_ANSWER_HEAD.unpack(raw)
            yield ConnectAnswer(session_id, result)
        elif command == ServerCommand.DROP_CONNECTION:
            pos, raw = _take(data, pos, SESSION_HEAD.size)
            if raw is None:
                return
            (session_id,) = SESSION_HEAD.unpack(raw)
            yield DropConnection(session_id)
        elif command == ServerCommand.WRITE:
            pos, raw = _take(data, pos, WRITE_HEAD.size)
            if raw is None:
                return
            session_id, size = WRITE_HEAD.unpack(raw)
            if size == 0:
                continue
            chunk = data[pos : pos + size]
            pos += len(chunk)
            yield WriteData(session_id, chunk)
        elif command == ServerCommand.DNS:
            pos, raw = _take(data, pos, DNS_HEAD.size)
            if raw is None:
                return
            dns_id, size = DNS_HEAD.unpack(raw)
            if size == 0:
                continue
            if size > MAX_DNS_PAYLOAD:
                raise ProtocolError(f"DNS reply of {size:#x} bytes is too large")
            pos, payload = _take(data, pos, size)
            if payload is None:
                return
            yield DnsReply(dns_id, payload)
        else:
            raise ProtocolError(f"unknown server command {command:#x}")