"""Decoding of the message stream the client uploads to the server."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum, auto

from .protocol import (
    CONNECT_HEAD,
    DNS_HEAD,
    IPV4_ADDRESS,
    MAX_DNS_PAYLOAD,
    SESSION_HEAD,
    WRITE_HEAD,
    AddressType,
    ClientCommand,
    Collector,
    ProtocolError,
)

__all__ = [
    "ConnectRequestMessage",
    "DropRequest",
    "WriteRequest",
    "DnsQuery",
    "ClientMessage",
    "ClientStreamDecoder",
]


@dataclass(frozen=True)
class ConnectRequestMessage:
    """Request to open a TCP connection to an IPv4 address."""

    session_id: int
    mode: int
    ip: int
    port: int


@dataclass(frozen=True)
class DropRequest:
    session_id: int


@dataclass(frozen=True)
class WriteRequest:
    """A piece of data for a session; one write may arrive as several pieces."""

    session_id: int
    data: bytes


@dataclass(frozen=True)
class DnsQuery:
    """DNS query without its transaction id."""

    dns_id: int
    data: bytes


ClientMessage = ConnectRequestMessage | DropRequest | WriteRequest | DnsQuery


class _State(Enum):
    BEGIN = auto()
    CONNECT = auto()
    CONNECT_ADDRESS = auto()
    DROP = auto()
    WRITE = auto()
    WRITE_DATA = auto()
    DNS = auto()
    DNS_DATA = auto()


class ClientStreamDecoder:
    """Decodes client messages; a message may span several packets."""

    def __init__(self) -> None:
        self._state = _State.BEGIN
        self._collector: Collector | None = None
        self._session_id = 0
        self._mode = 0
        self._address_type = 0
        self._port = 0
        self._domain_size = 0
        self._remaining = 0
        self._dns_id = 0

    def feed(self, data: bytes) -> list[ClientMessage]:
        """Decode ``data`` and return the messages completed by it.

        Raises :class:`ProtocolError` on malformed or unsupported input.
        """
        return list(self.iter_feed(data))

    def iter_feed(self, data: bytes) -> Iterator[ClientMessage]:
        """Like :meth:`feed`, yielding each message as soon as it is decoded."""
        data = bytes(data)
        pos = 0
        while pos < len(data):
            state = self._state
            if state is _State.BEGIN:
                pos = self._begin(data, pos)
            elif state is _State.CONNECT:
                pos, raw = self._collect(data, pos)
                if raw is not None:
                    self._session_id, self._mode, self._address_type, self._port = (
                        CONNECT_HEAD.unpack(raw)
                    )
                    self._domain_size = 0
                    self._state = _State.CONNECT_ADDRESS
            elif state is _State.CONNECT_ADDRESS:
                pos, message = self._address(data, pos)
                if message is not None:
                    yield message
            elif state is _State.DROP:
                pos, raw = self._collect(data, pos)
                if raw is not None:
                    (session_id,) = SESSION_HEAD.unpack(raw)
                    self._state = _State.BEGIN
                    yield DropRequest(session_id)
            elif state is _State.WRITE:
                pos, raw = self._collect(data, pos)
                if raw is not None:
                    self._session_id, self._remaining = WRITE_HEAD.unpack(raw)
                    self._state = _State.WRITE_DATA if self._remaining else _State.BEGIN
            elif state is _State.WRITE_DATA:
                chunk = data[pos : pos + self._remaining]
                pos += len(chunk)
                self._remaining -= len(chunk)
                if self._remaining == 0:
                    self._state = _State.BEGIN
                yield WriteRequest(self._session_id, chunk)
            elif state is _State.DNS:
                pos, raw = self._collect(data, pos)
                if raw is not None:
                    self._dns_id, size = DNS_HEAD.unpack(raw)
                    if size == 0:
                        self._state = _State.BEGIN
                    elif size > MAX_DNS_PAYLOAD:
                        raise ProtocolError(f"DNS query of {size:#x} bytes is too large")
                    else:
                        self._collector = Collector(size)
                        self._state = _State.DNS_DATA
            elif state is _State.DNS_DATA:
                pos, payload = self._collect(data, pos)
                if payload is not None:
                    self._state = _State.BEGIN
                    yield DnsQuery(self._dns_id, payload)

    def _begin(self, data: bytes, pos: int) -> int:
        command = data[pos]
        pos += 1
        if command == ClientCommand.NOP:
            return pos
        if command == ClientCommand.CONNECT:
            self._expect(_State.CONNECT, CONNECT_HEAD.size)
        elif command == ClientCommand.DROP_CONNECTION:
            self._expect(_State.DROP, SESSION_HEAD.size)
        elif command == ClientCommand.WRITE:
            self._expect(_State.WRITE, WRITE_HEAD.size)
        elif command == ClientCommand.DNS:
            self._expect(_State.DNS, DNS_HEAD.size)
        else:
            raise ProtocolError(f"unknown client command {command:#x}")
        return pos

    def _expect(self, state: _State, size: int) -> None:
        self._state = state
        self._collector = Collector(size)

    def _collect(self, data: bytes, pos: int) -> tuple[int, bytes | None]:
        assert self._collector is not None
        pos, value = self._collector.feed(data, pos)
        if value is not None:
            self._collector = None
        return pos, value

    def _address(self, data: bytes, pos: int) -> tuple[int, ConnectRequestMessage | None]:
        kind = self._address_type
        if kind == AddressType.DOMAIN:
            if self._domain_size == 0:
                self._domain_size = data[pos]
                pos += 1
                if self._domain_size == 0:
                    raise ProtocolError("empty domain name")
                self._collector = Collector(self._domain_size)
                return pos, None
            pos, name = self._collect(data, pos)
            if name is not None:
                raise ProtocolError(
                    f"domain connects are not supported: {name.decode('latin-1')}"
                )
            return pos, None
        if kind == AddressType.IPV4:
            if self._collector is None:
                self._collector = Collector(IPV4_ADDRESS.size)
            pos, raw = self._collect(data, pos)
            if raw is None:
                return pos, None
            (ip,) = IPV4_ADDRESS.unpack(raw)
            self._state = _State.BEGIN
            return pos, ConnectRequestMessage(self._session_id, self._mode, ip, self._port)
        if kind == AddressType.IPV6:
            raise ProtocolError("IPv6 connects are not supported")
        raise ProtocolError(f"unknown address type {kind:#x}")