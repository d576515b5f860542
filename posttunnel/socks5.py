"""SOCKS5 greeting and CONNECT request handling for the local proxy side."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import Enum, auto

from .protocol import Collector

__all__ = [
    "Socks5Error",
    "ConnectRequest",
    "Socks5Handshake",
    "build_connect_reply",
    "CMD_CONNECT",
    "CMD_UDP_ASSOCIATE",
]

VERSION = 0x05
NO_AUTH = 0x00
CMD_CONNECT = 0x01
CMD_UDP_ASSOCIATE = 0x03
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04


class Socks5Error(Exception):
    """Raised when a client breaks or asks for something unsupported."""


@dataclass(frozen=True)
class ConnectRequest:
    command: int
    ip: int
    port: int

    @property
    def host(self) -> str:
        return str(ipaddress.IPv4Address(self.ip))


class _State(Enum):
    VERSION = auto()
    NAUTH = auto()
    AUTH = auto()
    CMD_VERSION = auto()
    CMD = auto()
    RSV = auto()
    ADDRESS_TYPE = auto()
    ADDRESS = auto()
    PORT = auto()
    WAITING = auto()


class Socks5Handshake:
    """State machine for one client up to its CONNECT request."""

    def __init__(self) -> None:
        self._state = _State.VERSION
        self._collector: Collector | None = None
        self._command = 0
        self._address_type = 0
        self._domain_size = 0
        self._ip = 0
        self.request: ConnectRequest | None = None

    def feed(self, data: bytes) -> tuple[bytes, ConnectRequest | None]:
        """Consume client bytes.

        Returns bytes to send back and the connect request once it is
        complete. Any data after the request is an error, since the client
        must wait for the connect reply.
        """
        data = bytes(data)
        reply = bytearray()
        request = None
        pos = 0
        while pos < len(data):
            state = self._state
            if state is _State.WAITING:
                raise Socks5Error("data received before the connect reply")
            if state is _State.VERSION:
                if data[pos] != VERSION:
                    raise Socks5Error("only SOCKS version 5 is supported")
                pos += 1
                self._state = _State.NAUTH
            elif state is _State.NAUTH:
                count = data[pos]
                pos += 1
                if count == 0:
                    raise Socks5Error("no authentication methods offered")
                self._collector = Collector(count)
                self._state = _State.AUTH
            elif state is _State.AUTH:
                pos, methods = self._collect(data, pos)
                if methods is not None:
                    if NO_AUTH not in methods:
                        raise Socks5Error("client does not offer no-authentication")
                    reply += bytes([VERSION, NO_AUTH])
                    self._state = _State.CMD_VERSION
            elif state is _State.CMD_VERSION:
                if data[pos] != VERSION:
                    raise Socks5Error("bad request version")
                pos += 1
                self._state = _State.CMD
            elif state is _State.CMD:
                self._command = data[pos]
                pos += 1
                self._state = _State.RSV
            elif state is _State.RSV:
                if data[pos] != 0:
                    raise Socks5Error("reserved byte is not zero")
                pos += 1
                self._state = _State.ADDRESS_TYPE
            elif state is _State.ADDRESS_TYPE:
                self._address_type = data[pos]
                pos += 1
                self._domain_size = 0
                self._state = _State.ADDRESS
            elif state is _State.ADDRESS:
                pos = self._address(data, pos)
            elif state is _State.PORT:
                pos, raw = self._collect(data, pos)
                if raw is not None:
                    request = self._finish(int.from_bytes(raw, "big"))
        return bytes(reply), request

    def _collect(self, data: bytes, pos: int) -> tuple[int, bytes | None]:
        assert self._collector is not None
        pos, value = self._collector.feed(data, pos)
        if value is not None:
            self._collector = None
        return pos, value

    def _address(self, data: bytes, pos: int) -> int:
        kind = self._address_type
        if kind == ATYP_DOMAIN:
            if self._domain_size == 0:
                self._domain_size = data[pos]
                pos += 1
                if self._domain_size == 0:
                    raise Socks5Error("empty domain name")
                self._collector = Collector(self._domain_size)
                return pos
            pos, name = self._collect(data, pos)
            if name is not None:
                raise Socks5Error(
                    f"domain requests are not supported: {name.decode('latin-1')}"
                )
            return pos
        if kind == ATYP_IPV4:
            if self._collector is None:
                self._collector = Collector(4)
            pos, raw = self._collect(data, pos)
            if raw is not None:
                self._ip = int.from_bytes(raw, "big")
                self._collector = Collector(2)
                self._state = _State.PORT
            return pos
        if kind == ATYP_IPV6:
            if self._collector is None:
                self._collector = Collector(16)
            pos, raw = self._collect(data, pos)
            if raw is not None:
                raise Socks5Error("IPv6 is not supported")
            return pos
        raise Socks5Error(f"unknown address type {kind:#x}")

    def _finish(self, port: int) -> ConnectRequest:
        if self._command == CMD_UDP_ASSOCIATE:
            raise Socks5Error("UDP associate is not supported")
        if self._command != CMD_CONNECT:
            raise Socks5Error(f"unknown command {self._command:#x}")
        self.request = ConnectRequest(self._command, self._ip, port)
        self._state = _State.WAITING
        return self.request


def build_connect_reply(success: bool) -> bytes:
    """Reply to a CONNECT request; the bound address is always zero."""
    return bytes([VERSION, 0 if success else 1, 0, ATYP_IPV4, 0, 0, 0, 0, 0, 0])