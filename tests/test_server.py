import asyncio
import socket

import pytest

from posttunnel.clientproto import ConnectAnswer, DnsReply, WriteData, iter_server_messages
from posttunnel.httpwire import (
    ACK_FIELD,
    Header,
    HeadParser,
    StartLine,
    build_poll_request,
    build_upload_request,
)
from posttunnel.loadbalance import WRITE_MESSAGE_OVERHEAD
from posttunnel.protocol import (
    ConnectResult,
    ProtocolError,
    encode_client_connect,
    encode_client_dns,
    encode_client_drop,
    encode_client_write,
)
from posttunnel.sequence import PacketLossError
from posttunnel.server import TunnelServer, main


def upload_body(ack, payload):
    return ACK_FIELD.pack(ack) + payload


def decode_download(response):
    _, _, body = response.partition(b"\r\n\r\n")
    (ack,) = ACK_FIELD.unpack_from(body)
    return ack, list(iter_server_messages(body[ACK_FIELD.size :]))


async def poll_download(server, ack, attempts=200):
    for _ in range(attempts):
        response = server.build_download(ack)
        if response is not None:
            return response
        await asyncio.sleep(0.02)
    raise AssertionError("no download was produced")


async def start_echo():
    async def handle(reader, writer):
        while data := await reader.read(4096):
            writer.write(data)
            await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, "127.0.0.1", 0)


def free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def read_response(reader):
    parser = HeadParser()
    items = []
    rest = b""
    while not parser.done:
        chunk = await reader.read(4096)
        if not chunk:
            raise ConnectionError("closed")
        pos, found = parser.feed(chunk)
        items.extend(found)
        rest = chunk[pos:]
    length = next(
        int(item.value)
        for item in items
        if isinstance(item, Header) and item.name == "Content-Length"
    )
    body = rest
    if len(body) < length:
        body += await reader.readexactly(length - len(body))
    return items, body


class _FakeDns(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(data[:2] + b"answer", addr)


def test_build_download_without_data_returns_none():
    server = TunnelServer()
    assert server.build_download(0) is None


def test_short_upload_body_is_rejected():
    server = TunnelServer()
    with pytest.raises(ProtocolError):
        server.handle_upload(b"\x00\x00")


def test_unknown_command_is_rejected():
    server = TunnelServer()
    with pytest.raises(ProtocolError):
        server.handle_upload(upload_body(0, b"\x00"))


def test_future_packet_is_packet_loss():
    server = TunnelServer()
    with pytest.raises(PacketLossError) as info:
        server.handle_upload(upload_body(1, b""))
    assert info.value.ack == 1
    assert info.value.expected == 0


def test_duplicate_upload_is_ignored():
    server = TunnelServer()
    server.handle_upload(upload_body(0, b"\x01"))
    server.handle_upload(upload_body(0, b"\x00"))
    with pytest.raises(ProtocolError):
        server.handle_upload(upload_body(1, b"\x00"))


def test_drop_of_unknown_session_sends_nothing():
    server = TunnelServer()
    server.handle_upload(upload_body(0, encode_client_drop(9)))
    assert server.build_download(0) is None


def test_max_send_must_leave_room():
    with pytest.raises(ValueError):
        TunnelServer(max_send=WRITE_MESSAGE_OVERHEAD)


def test_main_rejects_bad_port():
    with pytest.raises(SystemExit):
        main(["--listen-port", "abc"])


@pytest.mark.asyncio
async def test_connect_write_and_drop_session():
    echo = await start_echo()
    port = echo.sockets[0].getsockname()[1]
    server = TunnelServer(dns_host="127.0.0.1")
    try:
        server.handle_upload(upload_body(0, encode_client_connect(7, "127.0.0.1", port)))
        first = await poll_download(server, 0)
        ack, messages = decode_download(first)
        assert ack == 0
        assert messages == [ConnectAnswer(7, ConnectResult.SUCCESS)]
        assert server.build_download(0) == first

        server.handle_upload(upload_body(1, encode_client_write(7, b"hello")))
        collected = b""
        next_ack = 1
        while len(collected) < 5:
            ack, messages = decode_download(await poll_download(server, next_ack))
            assert ack == next_ack
            collected += b"".join(m.data for m in messages if isinstance(m, WriteData))
            next_ack += 1
        assert collected == b"hello"

        server.handle_upload(upload_body(2, encode_client_drop(7)))
        server.build_download(next_ack)
        assert server.build_download(next_ack) is None
    finally:
        echo.close()
        await asyncio.wait_for(echo.wait_closed(), 5)


@pytest.mark.asyncio
async def test_failed_connect_is_answered():
    server = TunnelServer()
    server.handle_upload(upload_body(0, encode_client_connect(3, "127.0.0.1", free_port())))
    ack, messages = decode_download(await poll_download(server, 0))
    assert ack == 0
    assert messages == [ConnectAnswer(3, ConnectResult.FAILURE)]
    assert not messages[0].success


@pytest.mark.asyncio
async def test_duplicate_session_is_rejected():
    echo = await start_echo()
    port = echo.sockets[0].getsockname()[1]
    server = TunnelServer()
    try:
        connect = encode_client_connect(1, "127.0.0.1", port)
        with pytest.raises(ProtocolError):
            server.handle_upload(upload_body(0, connect + connect))
        ack, messages = decode_download(await poll_download(server, 0))
        assert messages == [ConnectAnswer(1, ConnectResult.SUCCESS)]
        server.handle_upload(upload_body(1, encode_client_drop(1)))
    finally:
        echo.close()
        await asyncio.wait_for(echo.wait_closed(), 5)


@pytest.mark.asyncio
async def test_dns_query_round_trip_over_http():
    loop = asyncio.get_running_loop()
    dns_transport, _ = await loop.create_datagram_endpoint(
        _FakeDns, local_addr=("127.0.0.1", 0)
    )
    dns_port = dns_transport.get_extra_info("sockname")[1]
    server = TunnelServer(listen_port=0, dns_host="127.0.0.1", dns_port=dns_port)
    task = asyncio.create_task(server.run())
    try:
        await asyncio.wait_for(server.ready.wait(), 5)
        reader, writer = await asyncio.open_connection("127.0.0.1", server.listen_port)
        writer.write(build_upload_request(0, encode_client_dns(5, b"query")))
        items, body = await asyncio.wait_for(read_response(reader), 5)
        assert items[0] == StartLine("HTTP/1.1", "200", "OK")
        assert body == b""

        writer.write(build_poll_request(0))
        items, body = await asyncio.wait_for(read_response(reader), 5)
        assert items[0] == StartLine("HTTP/1.1", "200", "OK")
        assert ACK_FIELD.unpack_from(body) == (0,)
        assert list(iter_server_messages(body[ACK_FIELD.size :])) == [
            DnsReply(5, b"answer")
        ]
        writer.close()
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        dns_transport.close()


@pytest.mark.asyncio
async def test_unknown_request_closes_connection():
    server = TunnelServer(listen_port=0, dns_host="127.0.0.1", dns_port=free_port())
    task = asyncio.create_task(server.run())
    try:
        await asyncio.wait_for(server.ready.wait(), 5)
        reader, writer = await asyncio.open_connection("127.0.0.1", server.listen_port)
        writer.write(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
        try:
            data = await asyncio.wait_for(reader.read(100), 5)
        except ConnectionResetError:
            data = b""
        assert data == b""
        writer.close()
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)