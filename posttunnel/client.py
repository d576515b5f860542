"""Local end of the tunnel: a SOCKS5 proxy and DNS relay carried over HTTP POSTs."""

from __future__ import annotations

import argparse
import asyncio
import logging
import socket
from dataclasses import dataclass, field
from typing import Protocol

from .clientproto import (
    ConnectAnswer,
    DnsReply,
    DropConnection,
    WriteData,
    iter_server_messages,
)
from .httpwire import (
    ACK_FIELD,
    Header,
    HeadParser,
    HttpDecodeError,
    StartLine,
    build_poll_request,
    build_upload_request,
)
from .loadbalance import plan_writes
from .protocol import (
    ProtocolError,
    encode_client_connect,
    encode_client_dns,
    encode_client_drop,
    encode_client_write,
)
from .sequence import InboundSequencer, OutboundSequencer
from .sessionbuffer import SessionBuffer
from .socks5 import ConnectRequest, Socks5Error, Socks5Handshake, build_connect_reply

__all__ = ["TunnelClient", "main"]

log = logging.getLogger(__name__)

DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 80
DEFAULT_SOCKS_PORT = 8080
DEFAULT_DNS_PORT = 10053
DEFAULT_MAX_SEND = 0x7FFF

SEND_INTERVAL = 0.05
RECONNECT_DELAY = 1.0
DNS_TIMEOUT = 20.0
READ_SIZE = 0x1000
MAX_DATAGRAM = 0x800
_ID_MASK = 0xFFFFFFFF


class _Peer(Protocol):
    def write(self, data: bytes) -> None: ...

    def close_soft(self) -> None: ...

    def close_hard(self) -> None: ...


class _StreamPeer:
    """A SOCKS client connection."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    def write(self, data: bytes) -> None:
        if not self._writer.is_closing():
            self._writer.write(data)

    def close_soft(self) -> None:
        self._writer.close()

    def close_hard(self) -> None:
        self._writer.transport.abort()


@dataclass
class _Session:
    peer: _Peer | None
    buffer: SessionBuffer = field(default_factory=SessionBuffer)
    connected: bool = False


@dataclass
class _DnsQuery:
    transaction: bytes
    address: tuple
    handle: asyncio.TimerHandle | None = None


class _ExchangeError(Exception):
    """The HTTP peer answered with something other than the expected response."""


class _DnsProtocol(asyncio.DatagramProtocol):
    def __init__(self, client: TunnelClient) -> None:
        self._client = client

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._client._dns_datagram(data, addr)


_CONNECTION_ERRORS = (
    OSError,
    asyncio.IncompleteReadError,
    HttpDecodeError,
    ProtocolError,
    _ExchangeError,
)


class TunnelClient:
    """Accepts SOCKS5 and DNS traffic locally and relays it through the server."""

    def __init__(
        self,
        server_host: str = DEFAULT_SERVER_HOST,
        server_port: int = DEFAULT_SERVER_PORT,
        socks_port: int = DEFAULT_SOCKS_PORT,
        dns_port: int = DEFAULT_DNS_PORT,
        max_send: int = DEFAULT_MAX_SEND,
    ) -> None:
        self.server_host = server_host
        self.server_port = server_port
        self.socks_port = socks_port
        self.dns_port = dns_port
        self.max_send = max_send

        self._sessions: dict[int, _Session] = {}
        self._next_session_id = 0
        self._send_buffer = bytearray()
        self._outbound = OutboundSequencer()
        self._inbound = InboundSequencer()
        self._dns_queries: dict[int, _DnsQuery] = {}
        self._next_dns_id = 0
        self._dns_transport: asyncio.DatagramTransport | None = None

    async def run(self) -> None:
        """Serve until cancelled or until packet loss makes going on impossible."""
        loop = asyncio.get_running_loop()
        socks_server = await asyncio.start_server(self._serve_socks, port=self.socks_port)
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DnsProtocol(self), local_addr=("0.0.0.0", self.dns_port)
        )
        self._dns_transport = transport
        tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._recv_loop()),
        ]
        try:
            async with socks_server:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    task.result()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            transport.close()
            self._dns_transport = None

    def build_upload(self) -> bytes | None:
        """Return the next upload request, or ``None`` when there is nothing to send.

        An unconfirmed packet is sent again before any new one is made.
        """
        if not self._outbound.has_unacked():
            self._gather_session_writes()
            if not self._send_buffer:
                return None
            self._outbound.push(bytes(self._send_buffer))
            self._send_buffer.clear()
        ack, payload = self._outbound.current()
        return build_upload_request(ack, payload)

    def handle_download(self, body: bytes) -> None:
        """Process one downloaded body: an acknowledgement number and a packet."""
        body = bytes(body)
        if len(body) < ACK_FIELD.size:
            raise ProtocolError("download body is shorter than its acknowledgement")
        (ack,) = ACK_FIELD.unpack_from(body)
        for payload in self._inbound.accept(ack, body[ACK_FIELD.size :]):
            for message in iter_server_messages(payload):
                self._apply(message)

    # session bookkeeping

    def _queue(self, message: bytes) -> None:
        self._send_buffer += message

    def _open_session(self, peer: _Peer, request: ConnectRequest) -> int:
        session_id = self._next_session_id
        self._next_session_id = (session_id + 1) & _ID_MASK
        self._sessions[session_id] = _Session(peer)
        self._queue(encode_client_connect(session_id, request.ip, request.port))
        log.debug("connect request %#x", session_id)
        return session_id

    def _peer_data(self, session_id: int, peer: _Peer, data: bytes) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.peer is not peer:
            return
        if not session.connected:
            raise Socks5Error("data received before the connect reply")
        session.buffer.push(data)

    def _peer_closed(self, session_id: int, peer: _Peer) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.peer is not peer:
            return
        if session.connected:
            session.peer = None
        else:
            del self._sessions[session_id]
            self._queue(encode_client_drop(session_id))

    def _remove_session(self, session_id: int) -> None:
        session = self._sessions.pop(session_id)
        if session.peer is None:
            return
        if session.connected:
            session.peer.close_soft()
        else:
            session.peer.close_hard()

    def _gather_session_writes(self) -> None:
        for session_id, session in list(self._sessions.items()):
            if session.peer is None and not len(session.buffer):
                self._remove_session(session_id)
                self._queue(encode_client_drop(session_id))
        pending = {
            session_id: session.buffer
            for session_id, session in self._sessions.items()
            if session.peer is None or session.connected
        }
        for session_id, data in plan_writes(pending, len(self._send_buffer), self.max_send):
            self._queue(encode_client_write(session_id, data))

    def _upload_confirmed(self) -> None:
        self._outbound.acknowledge(self._outbound.acked + 1)

    def _apply(self, message) -> None:
        if isinstance(message, ConnectAnswer):
            self._connect_answer(message)
        elif isinstance(message, DropConnection):
            if message.session_id in self._sessions:
                self._remove_session(message.session_id)
        elif isinstance(message, WriteData):
            session = self._sessions.get(message.session_id)
            if session is not None and session.peer is not None:
                session.peer.write(message.data)
        elif isinstance(message, DnsReply):
            self._dns_reply(message)

    def _connect_answer(self, answer: ConnectAnswer) -> None:
        session = self._sessions.get(answer.session_id)
        if session is None:
            return
        peer = session.peer
        if peer is not None:
            peer.write(build_connect_reply(answer.success))
        if not answer.success:
            if peer is not None:
                peer.close_hard()
                self._peer_closed(answer.session_id, peer)
            return
        session.buffer = SessionBuffer()
        session.connected = True

    # DNS relay

    def _dns_datagram(self, data: bytes, address: tuple) -> None:
        data = bytes(data[:MAX_DATAGRAM])
        if len(data) <= 2:
            return
        dns_id = self._next_dns_id
        self._next_dns_id = (dns_id + 1) & _ID_MASK
        if dns_id in self._dns_queries:
            self._remove_dns_query(dns_id)
        query = _DnsQuery(data[:2], address)
        query.handle = asyncio.get_running_loop().call_later(
            DNS_TIMEOUT, self._expire_dns_query, dns_id, query
        )
        self._dns_queries[dns_id] = query
        self._queue(encode_client_dns(dns_id, data[2:]))

    def _dns_reply(self, reply: DnsReply) -> None:
        query = self._dns_queries.get(reply.dns_id)
        if query is None:
            log.debug("DNS reply for unknown id %#x", reply.dns_id)
            return
        if self._dns_transport is not None:
            self._dns_transport.sendto(query.transaction + reply.data, query.address)
        self._remove_dns_query(reply.dns_id)

    def _remove_dns_query(self, dns_id: int) -> None:
        query = self._dns_queries.pop(dns_id, None)
        if query is not None and query.handle is not None:
            query.handle.cancel()

    def _expire_dns_query(self, dns_id: int, query: _DnsQuery) -> None:
        if self._dns_queries.get(dns_id) is query:
            del self._dns_queries[dns_id]

    # connections

    async def _serve_socks(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = _StreamPeer(writer)
        handshake = Socks5Handshake()
        session_id: int | None = None
        try:
            while data := await reader.read(READ_SIZE):
                if session_id is None:
                    reply, request = handshake.feed(data)
                    if reply:
                        peer.write(reply)
                    if request is not None:
                        session_id = self._open_session(peer, request)
                else:
                    self._peer_data(session_id, peer, data)
        except Socks5Error as exc:
            log.info("socks client rejected: %s", exc)
            if session_id is None and handshake.request is not None:
                session_id = self._open_session(peer, handshake.request)
            peer.close_hard()
        except OSError:
            pass
        finally:
            if session_id is not None:
                self._peer_closed(session_id, peer)
            writer.close()

    async def _connect_server(self, name: str):
        while True:
            try:
                reader, writer = await asyncio.open_connection(
                    self.server_host, self.server_port
                )
            except OSError:
                await asyncio.sleep(RECONNECT_DELAY)
                continue
            sock = writer.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            log.info("[+] %s", name)
            return reader, writer

    async def _send_loop(self) -> None:
        while True:
            reader, writer = await self._connect_server("http_send")
            try:
                await self._upload_exchanges(reader, writer)
            except _CONNECTION_ERRORS as exc:
                log.debug("http_send closed: %s", exc)
            finally:
                log.info("[-] http_send")
                writer.close()
            await asyncio.sleep(0)

    async def _upload_exchanges(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        parser = HeadParser()
        while True:
            await asyncio.sleep(SEND_INTERVAL)
            request = self.build_upload()
            if request is None:
                continue
            writer.write(request)
            await writer.drain()
            items, rest = await _read_head(reader, parser, b"")
            _check_response(items, expect_empty=True)
            if rest:
                raise _ExchangeError("unexpected data after the upload response")
            self._upload_confirmed()

    async def _recv_loop(self) -> None:
        while True:
            reader, writer = await self._connect_server("http_recv")
            try:
                await self._download_exchanges(reader, writer)
            except _CONNECTION_ERRORS as exc:
                log.debug("http_recv closed: %s", exc)
            finally:
                log.info("[-] http_recv")
                writer.close()
            await asyncio.sleep(0)

    async def _download_exchanges(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        parser = HeadParser()
        carry = b""
        while True:
            writer.write(build_poll_request(self._inbound.expected))
            await writer.drain()
            items, carry = await _read_head(reader, parser, carry)
            length = _check_response(items, expect_empty=False)
            if length < ACK_FIELD.size:
                raise _ExchangeError("download body is too short")
            if len(carry) >= length:
                body, carry = carry[:length], carry[length:]
            else:
                body = carry + await reader.readexactly(length - len(carry))
                carry = b""
            self.handle_download(body)


async def _read_head(
    reader: asyncio.StreamReader, parser: HeadParser, carry: bytes
) -> tuple[list[StartLine | Header], bytes]:
    parser.reset()
    items: list[StartLine | Header] = []
    data = carry
    while True:
        if data:
            pos, found = parser.feed(data)
            items.extend(found)
            if parser.done:
                return items, data[pos:]
        data = await reader.read(READ_SIZE)
        if not data:
            raise ConnectionError("server closed the connection")


def _check_response(items: list[StartLine | Header], expect_empty: bool) -> int:
    """Check a response head and return its content length."""
    combo = 0
    length: int | None = None
    for item in items:
        if isinstance(item, StartLine):
            combo += item.second == "200"
            combo += item.third == "OK"
        elif item.name == "Content-Length":
            if expect_empty:
                if item.value == "0":
                    combo += 1
                    length = 0
            else:
                if not item.value.isdigit():
                    raise _ExchangeError(f"bad content length {item.value!r}")
                length = int(item.value)
                combo += 1
        elif item.name == "Connection":
            combo += item.value.lower() == "keep-alive"
    if combo != 4 or length is None:
        raise _ExchangeError("unexpected response head")
    return length


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="posttunnel-client",
        description="Local SOCKS5 proxy and DNS relay tunnelled over HTTP.",
    )
    parser.add_argument("--server-host", default=DEFAULT_SERVER_HOST)
    parser.add_argument("--server-port", type=int, default=DEFAULT_SERVER_PORT)
    parser.add_argument("--socks-port", type=int, default=DEFAULT_SOCKS_PORT)
    parser.add_argument("--dns-port", type=int, default=DEFAULT_DNS_PORT)
    parser.add_argument(
        "--max-send", type=lambda text: int(text, 0), default=DEFAULT_MAX_SEND
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    client = TunnelClient(
        args.server_host, args.server_port, args.socks_port, args.dns_port, args.max_send
    )
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        pass
    return 0