"""Tunnel message protocol: command codes, fixed heads and encoders.

All multi-byte fields are packed little-endian with no padding.
"""

from __future__ import annotations

import ipaddress
import struct
from enum import IntEnum

__all__ = [
    "ClientCommand",
    "ServerCommand",
    "ConnectMode",
    "AddressType",
    "ConnectResult",
    "ProtocolError",
    "Collector",
    "CONNECT_HEAD",
    "SESSION_HEAD",
    "CONNECT_ANSWER_HEAD",
    "WRITE_HEAD",
    "DNS_HEAD",
    "IPV4_ADDRESS",
    "MAX_DNS_PAYLOAD",
    "encode_client_connect",
    "encode_client_drop",
    "encode_client_write",
    "encode_client_dns",
    "encode_server_connect_answer",
    "encode_server_drop",
    "encode_server_write",
    "encode_server_dns",
]


class ClientCommand(IntEnum):
    """Commands sent from the client side of the tunnel."""

    BAD = 0
    NOP = 1
    FACK = 2
    ACK = 3
    CONNECT = 4
    DROP_CONNECTION = 5
    WRITE = 6
    FILLER_WRITE = 7
    DNS = 8


class ServerCommand(IntEnum):
    """Commands sent from the server side of the tunnel."""

    BAD = 0
    NOP = 1
    FACK = 2
    ACK = 3
    CONNECT = 4
    CONNECT_ANSWER = 5
    DROP_CONNECTION = 6
    WRITE = 7
    FILLER_WRITE = 8
    DNS = 9


class ConnectMode(IntEnum):
    TCP = 0
    UDP = 1


class AddressType(IntEnum):
    IPV4 = 0
    IPV6 = 1
    DOMAIN = 2


class ConnectResult(IntEnum):
    SUCCESS = 0
    FAILURE = 1


class ProtocolError(Exception):
    """Raised when a tunnel message stream is malformed."""


# session id, mode, address type, port
CONNECT_HEAD = struct.Struct("<IBBH")
# session id
SESSION_HEAD = struct.Struct("<I")
# session id, result
CONNECT_ANSWER_HEAD = struct.Struct("<IB")
# session id, data size
WRITE_HEAD = struct.Struct("<IQ")
# dns id, size
DNS_HEAD = struct.Struct("<IH")
IPV4_ADDRESS = struct.Struct("<I")

# A DNS payload travels with a two byte transaction id in front of it
# inside a 0x800 byte datagram.
MAX_DNS_PAYLOAD = 0x800 - 2


class Collector:
    """Accumulates a fixed number of bytes that may arrive in pieces."""

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError("size must not be negative")
        self.size = size
        self._buffer = bytearray()

    @property
    def missing(self) -> int:
        """Number of bytes still needed to complete the current field."""
        return self.size - len(self._buffer)

    def feed(self, data: bytes, pos: int = 0) -> tuple[int, bytes | None]:
        """Take bytes from ``data`` starting at ``pos``.

        Returns the new position and the completed field, or ``None`` when
        more input is needed. After completing, the collector starts over.
        """
        chunk = data[pos : pos + self.missing]
        self._buffer += chunk
        pos += len(chunk)
        if len(self._buffer) == self.size:
            value = bytes(self._buffer)
            self._buffer.clear()
            return pos, value
        return pos, None


def _pack(layout: struct.Struct, *values: int) -> bytes:
    try:
        return layout.pack(*values)
    except struct.error as exc:
        raise ValueError(f"field out of range: {exc}") from exc


def _ip_value(ip: int | str | ipaddress.IPv4Address) -> int:
    if isinstance(ip, int):
        return ip
    return int(ipaddress.IPv4Address(ip))


def encode_client_connect(session_id: int, ip, port: int) -> bytes:
    """Encode a TCP connect request to an IPv4 address."""
    head = _pack(CONNECT_HEAD, session_id, ConnectMode.TCP, AddressType.IPV4, port)
    return bytes([ClientCommand.CONNECT]) + head + _pack(IPV4_ADDRESS, _ip_value(ip))


def encode_client_drop(session_id: int) -> bytes:
    return bytes([ClientCommand.DROP_CONNECTION]) + _pack(SESSION_HEAD, session_id)


def encode_client_write(session_id: int, data: bytes) -> bytes:
    head = _pack(WRITE_HEAD, session_id, len(data))
    return bytes([ClientCommand.WRITE]) + head + bytes(data)


def encode_client_dns(dns_id: int, data: bytes) -> bytes:
    head = _pack(DNS_HEAD, dns_id, len(data))
    return bytes([ClientCommand.DNS]) + head + bytes(data)


def encode_server_connect_answer(session_id: int, result: int) -> bytes:
    head = _pack(CONNECT_ANSWER_HEAD, session_id, int(result))
    return bytes([ServerCommand.CONNECT_ANSWER]) + head


def encode_server_drop(session_id: int) -> bytes:
    return bytes([ServerCommand.DROP_CONNECTION]) + _pack(SESSION_HEAD, session_id)


def encode_server_write(session_id: int, data: bytes) -> bytes:
    head = _pack(WRITE_HEAD, session_id, len(data))
    return bytes([ServerCommand.WRITE]) + head + bytes(data)


def encode_server_dns(dns_id: int, data: bytes) -> bytes:
    head = _pack(DNS_HEAD, dns_id, len(data))
    return bytes([ServerCommand.DNS]) + head + bytes(data)