"""Remote end of the tunnel: an HTTP endpoint that relays sessions and DNS."""

from __future__ import annotations

import argparse
import asyncio
import ipaddress
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum, auto

from .httpwire import (
    ACK_FIELD,
    POLL_PATH_PREFIX,
    UPLOAD_PATH,
    Header,
    HeadParser,
    HttpDecodeError,
    StartLine,
    build_ack_response,
    build_upload_response,
)
from .loadbalance import WRITE_MESSAGE_OVERHEAD, StarvationError, plan_writes
from .protocol import (
    ConnectResult,
    ProtocolError,
    encode_server_connect_answer,
    encode_server_dns,
    encode_server_drop,
    encode_server_write,
)
from .sequence import InboundSequencer, OutboundSequencer, PacketLossError
from .serverproto import (
    ClientStreamDecoder,
    ConnectRequestMessage,
    DnsQuery,
    DropRequest,
    WriteRequest,
)
from .sessionbuffer import SessionBuffer

__all__ = ["TunnelServer", "main"]

log = logging.getLogger(__name__)

DEFAULT_LISTEN_PORT = 80
DEFAULT_DNS_HOST = "1.1.1.1"
DEFAULT_DNS_PORT = 53
DEFAULT_MAX_SEND = 0x7FFF

SEND_INTERVAL = 0.05
DNS_TIMEOUT = 20.0
READ_SIZE = 0x1000
MAX_DATAGRAM = 0x800

_TRANSACTION = struct.Struct("<H")


class _ExchangeError(Exception):
    """The HTTP peer sent something the tunnel does not accept."""


_CONNECTION_ERRORS = (
    OSError,
    asyncio.IncompleteReadError,
    HttpDecodeError,
    ProtocolError,
    _ExchangeError,
)


class _RemotePeer:
    """Connection to a destination; writes made while connecting are held."""

    def __init__(self) -> None:
        self.writer: asyncio.StreamWriter | None = None
        self.closing = False
        self._pending = bytearray()

    def attach(self, writer: asyncio.StreamWriter) -> None:
        self.writer = writer
        if self._pending:
            writer.write(bytes(self._pending))
            self._pending.clear()
        if self.closing:
            writer.close()

    def write(self, data: bytes) -> None:
        if self.closing:
            return
        if self.writer is None:
            self._pending += data
        elif not self.writer.is_closing():
            self.writer.write(data)

    def close_soft(self) -> None:
        self.closing = True
        if self.writer is not None:
            self.writer.close()


@dataclass
class _Session:
    peer: _RemotePeer | None
    buffer: SessionBuffer = field(default_factory=SessionBuffer)


@dataclass
class _PendingDns:
    dns_id: int
    handle: asyncio.TimerHandle | None = None


class _Kind(Enum):
    UPLOAD = auto()
    POLL = auto()


@dataclass(frozen=True)
class _Request:
    kind: _Kind
    length: int
    ack: int = 0


class _HttpConnection:
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer

    def abort(self) -> None:
        self.writer.transport.abort()


class _DnsProtocol(asyncio.DatagramProtocol):
    def __init__(self, server: TunnelServer) -> None:
        self._server = server

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._server._dns_datagram(data, addr)


class TunnelServer:
    """Serves tunnel uploads and polls, opening TCP connections and relaying DNS."""

    def __init__(
        self,
        listen_port: int = DEFAULT_LISTEN_PORT,
        dns_host: str = DEFAULT_DNS_HOST,
        dns_port: int = DEFAULT_DNS_PORT,
        max_send: int = DEFAULT_MAX_SEND,
    ) -> None:
        if max_send <= WRITE_MESSAGE_OVERHEAD:
            raise ValueError("max_send leaves no room for session data")
        self.listen_port = listen_port
        self.dns_host = dns_host
        self.dns_port = dns_port
        self.max_send = max_send
        self.ready = asyncio.Event()

        self._sessions: dict[int, _Session] = {}
        self._send_buffer = bytearray()
        self._outbound = OutboundSequencer()
        self._inbound = InboundSequencer()
        self._dns_queries: dict[int, _PendingDns] = {}
        self._next_transaction = 0
        self._dns_transport: asyncio.DatagramTransport | None = None
        self._send_conn: _HttpConnection | None = None
        self._connections: set[_HttpConnection] = set()
        self._tasks: set[asyncio.Task] = set()
        self._failure: asyncio.Future | None = None

    async def run(self) -> None:
        """Serve until cancelled or until a fatal tunnel error occurs."""
        loop = asyncio.get_running_loop()
        self._failure = loop.create_future()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DnsProtocol(self), local_addr=("0.0.0.0", 0)
        )
        self._dns_transport = transport
        try:
            server = await asyncio.start_server(
                self._serve_http, host="0.0.0.0", port=self.listen_port
            )
            self.listen_port = server.sockets[0].getsockname()[1]
            self.ready.set()
            async with server:
                try:
                    await self._failure
                finally:
                    for conn in list(self._connections):
                        conn.abort()
        finally:
            self.ready.clear()
            transport.close()
            self._dns_transport = None
            for task in list(self._tasks):
                task.cancel()
            self._failure = None

    def handle_upload(self, body: bytes) -> None:
        """Process one uploaded body: an acknowledgement number and a packet."""
        body = bytes(body)
        if len(body) < ACK_FIELD.size:
            raise ProtocolError("upload body is shorter than its acknowledgement")
        (ack,) = ACK_FIELD.unpack_from(body)
        decoder = ClientStreamDecoder()
        for payload in self._inbound.accept(ack, body[ACK_FIELD.size :]):
            for message in decoder.iter_feed(payload):
                self._apply(message)

    def build_download(self, ack: int) -> bytes | None:
        """Return the response for a poll confirming up to ``ack``.

        The oldest unconfirmed packet is sent again; otherwise a new packet
        is made. Returns ``None`` when there is nothing to send.
        """
        self._outbound.acknowledge(ack)
        if not self._outbound.has_unacked():
            self._gather_session_writes()
            if not self._send_buffer:
                return None
            self._pack_send_buffer()
        number, payload = self._outbound.current()
        return build_ack_response(number, payload)

    # outgoing messages

    def _queue(self, message: bytes) -> None:
        self._send_buffer += message

    def _pack_send_buffer(self) -> None:
        self._outbound.push(bytes(self._send_buffer))
        self._send_buffer.clear()

    def _queue_write(self, session_id: int, data: bytes) -> None:
        pos = 0
        while pos < len(data):
            if self.max_send - len(self._send_buffer) <= WRITE_MESSAGE_OVERHEAD:
                self._pack_send_buffer()
            room = self.max_send - len(self._send_buffer) - WRITE_MESSAGE_OVERHEAD
            chunk = data[pos : pos + room]
            self._queue(encode_server_write(session_id, chunk))
            pos += len(chunk)

    def _gather_session_writes(self) -> None:
        for session_id, session in list(self._sessions.items()):
            if session.peer is None and not len(session.buffer):
                self._remove_session(session_id)
                self._queue(encode_server_drop(session_id))
        pending = {session_id: s.buffer for session_id, s in self._sessions.items()}
        for session_id, data in plan_writes(pending, len(self._send_buffer), self.max_send):
            self._queue_write(session_id, data)

    # incoming messages

    def _apply(self, message) -> None:
        if isinstance(message, ConnectRequestMessage):
            self._connect(message)
        elif isinstance(message, DropRequest):
            if message.session_id in self._sessions:
                self._remove_session(message.session_id)
        elif isinstance(message, WriteRequest):
            session = self._sessions.get(message.session_id)
            if session is not None and session.peer is not None:
                session.peer.write(message.data)
        elif isinstance(message, DnsQuery):
            self._dns_query(message)

    def _remove_session(self, session_id: int) -> None:
        session = self._sessions.pop(session_id)
        if session.peer is not None:
            session.peer.close_soft()

    def _connect(self, message: ConnectRequestMessage) -> None:
        if message.session_id in self._sessions:
            raise ProtocolError(f"session {message.session_id:#x} already exists")
        loop = asyncio.get_running_loop()
        peer = _RemotePeer()
        self._sessions[message.session_id] = _Session(peer)
        host = str(ipaddress.IPv4Address(message.ip))
        task = loop.create_task(self._run_remote(message.session_id, peer, host, message.port))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_remote(self, session_id: int, peer: _RemotePeer, host: str, port: int) -> None:
        try:
            reader, writer = await asyncio.open_connection(host, port)
        except OSError:
            self._queue(encode_server_connect_answer(session_id, ConnectResult.FAILURE))
            session = self._sessions.get(session_id)
            if session is not None and session.peer is peer:
                session.peer = None
                del self._sessions[session_id]
            return
        if peer.closing:
            writer.close()
            return
        self._queue(encode_server_connect_answer(session_id, ConnectResult.SUCCESS))
        peer.attach(writer)
        try:
            while data := await reader.read(READ_SIZE):
                session = self._sessions.get(session_id)
                if session is None or session.peer is not peer:
                    continue
                session.buffer.push(data)
        except OSError:
            pass
        finally:
            session = self._sessions.get(session_id)
            if session is not None and session.peer is peer:
                session.peer = None
            writer.close()

    # DNS relay

    def _dns_query(self, query: DnsQuery) -> None:
        loop = asyncio.get_running_loop()
        transaction = self._next_transaction
        self._next_transaction = (transaction + 1) & 0xFFFF
        if transaction in self._dns_queries:
            self._remove_dns_query(transaction)
        record = _PendingDns(query.dns_id)
        record.handle = loop.call_later(DNS_TIMEOUT, self._expire_dns_query, transaction, record)
        self._dns_queries[transaction] = record
        if self._dns_transport is not None:
            self._dns_transport.sendto(
                _TRANSACTION.pack(transaction) + query.data, (self.dns_host, self.dns_port)
            )

    def _dns_datagram(self, data: bytes, address: tuple) -> None:
        data = bytes(data[:MAX_DATAGRAM])
        if len(data) <= _TRANSACTION.size:
            return
        if address[0] != self.dns_host or address[1] != self.dns_port:
            return
        (transaction,) = _TRANSACTION.unpack_from(data)
        record = self._dns_queries.get(transaction)
        if record is None:
            return
        self._queue(encode_server_dns(record.dns_id, data[_TRANSACTION.size :]))
        self._remove_dns_query(transaction)

    def _remove_dns_query(self, transaction: int) -> None:
        record = self._dns_queries.pop(transaction, None)
        if record is not None and record.handle is not None:
            record.handle.cancel()

    def _expire_dns_query(self, transaction: int, record: _PendingDns) -> None:
        if self._dns_queries.get(transaction) is record:
            del self._dns_queries[transaction]

    # HTTP side

    def _fail(self, exc: BaseException) -> None:
        if self._failure is not None and not self._failure.done():
            self._failure.set_exception(exc)

    async def _serve_http(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        conn = _HttpConnection(reader, writer)
        self._connections.add(conn)
        parser = HeadParser()
        carry = b""
        last_kind: _Kind | None = None
        combo = 0
        try:
            while True:
                items, carry = await _read_head(reader, parser, carry)
                request = _classify(items)
                if request.kind is not last_kind:
                    combo = 0
                last_kind = request.kind
                combo += 1
                body, carry = await _read_body(reader, carry, request.length)
                if request.kind is _Kind.UPLOAD:
                    self.handle_upload(body)
                    writer.write(build_upload_response())
                else:
                    carry = await self._serve_poll(conn, request.ack, combo == 1)
        except (PacketLossError, StarvationError) as exc:
            log.error("tunnel failed: %s", exc)
            conn.abort()
            self._fail(exc)
        except _CONNECTION_ERRORS as exc:
            log.debug("http connection closed: %s", exc)
            conn.abort()
        finally:
            self._connections.discard(conn)
            if self._send_conn is conn:
                self._send_conn = None
            writer.close()

    async def _serve_poll(self, conn: _HttpConnection, ack: int, immediate: bool) -> bytes:
        previous = self._send_conn
        if previous is not None and previous is not conn:
            previous.abort()
        self._send_conn = conn
        log.info("[+] http_send")
        pending_read = asyncio.ensure_future(conn.reader.read(READ_SIZE))
        try:
            wait = not immediate
            while True:
                if wait:
                    done, _ = await asyncio.wait({pending_read}, timeout=SEND_INTERVAL)
                    if done:
                        raise _ExchangeError("data received while waiting to send")
                wait = True
                if self._send_conn is not conn:
                    raise _ExchangeError("replaced by a newer poll")
                response = self.build_download(ack)
                if response is not None:
                    conn.writer.write(response)
                    break
        except BaseException:
            _discard(pending_read)
            raise
        finally:
            if self._send_conn is conn:
                self._send_conn = None
            log.info("[-] http_send")
        return await pending_read


def _discard(task: asyncio.Future) -> None:
    if task.done():
        if not task.cancelled():
            task.exception()
    else:
        task.cancel()


def _classify(items: list[StartLine | Header]) -> _Request:
    kind: _Kind | None = None
    ack = 0
    length: int | None = None
    for item in items:
        if isinstance(item, StartLine):
            if item.first != "POST":
                continue
            path = item.second
            if len(path) > len(POLL_PATH_PREFIX) and path.startswith(POLL_PATH_PREFIX):
                try:
                    ack = int(path[len(POLL_PATH_PREFIX) :], 16) & 0xFFFFFFFF
                except ValueError:
                    continue
                kind = _Kind.POLL
            elif path == UPLOAD_PATH:
                kind = _Kind.UPLOAD
        elif item.name == "Content-Length":
            if not item.value.isdigit():
                raise _ExchangeError(f"bad content length {item.value!r}")
            length = int(item.value)
    if kind is _Kind.UPLOAD and length is not None and length >= ACK_FIELD.size:
        return _Request(kind, length)
    if kind is _Kind.POLL and length is not None:
        return _Request(kind, length, ack)
    raise _ExchangeError("unknown request")


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
            raise ConnectionError("peer closed the connection")


async def _read_body(
    reader: asyncio.StreamReader, carry: bytes, length: int
) -> tuple[bytes, bytes]:
    if len(carry) >= length:
        return carry[:length], carry[length:]
    return carry + await reader.readexactly(length - len(carry)), b""


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="posttunnel-server",
        description="HTTP endpoint relaying tunnelled TCP sessions and DNS queries.",
    )
    parser.add_argument("--listen-port", type=int, default=DEFAULT_LISTEN_PORT)
    parser.add_argument("--dns-host", default=DEFAULT_DNS_HOST)
    parser.add_argument("--dns-port", type=int, default=DEFAULT_DNS_PORT)
    parser.add_argument(
        "--max-send", type=lambda text: int(text, 0), default=DEFAULT_MAX_SEND
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    server = TunnelServer(args.listen_port, args.dns_host, args.dns_port, args.max_send)
    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass
    return 0