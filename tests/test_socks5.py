import pytest

from posttunnel.socks5 import (
    ConnectRequest,
    Socks5Error,
    Socks5Handshake,
    build_connect_reply,
)

GREETING = bytes([5, 1, 0])
REQUEST = bytes([5, 1, 0, 1, 127, 0, 0, 1]) + (8080).to_bytes(2, "big")


def test_greeting_reply():
    reply, request = Socks5Handshake().feed(GREETING)
    assert reply == bytes([5, 0])
    assert request is None


def test_connect_request():
    shake = Socks5Handshake()
    shake.feed(GREETING)
    reply, request = shake.feed(REQUEST)
    assert reply == b""
    assert request == ConnectRequest(1, 0x7F000001, 8080)
    assert request.host == "127.0.0.1"
    assert shake.request == request


def test_byte_by_byte():
    shake = Socks5Handshake()
    replies = b""
    found = []
    for byte in GREETING + REQUEST:
        reply, request = shake.feed(bytes([byte]))
        replies += reply
        if request is not None:
            found.append(request)
    assert replies == bytes([5, 0])
    assert found == [ConnectRequest(1, 0x7F000001, 8080)]


def test_no_auth_among_several_methods():
    reply, _ = Socks5Handshake().feed(bytes([5, 2, 2, 0]))
    assert reply == bytes([5, 0])


def test_data_after_request_rejected():
    shake = Socks5Handshake()
    shake.feed(GREETING)
    with pytest.raises(Socks5Error):
        shake.feed(REQUEST + b"x")


def test_data_while_waiting_rejected():
    shake = Socks5Handshake()
    shake.feed(GREETING + REQUEST)
    with pytest.raises(Socks5Error):
        shake.feed(b"x")


@pytest.mark.parametrize(
    "data",
    [
        bytes([4, 1, 0]),
        bytes([5, 0]),
        bytes([5, 1, 2]),
        GREETING + bytes([4]),
        GREETING + bytes([5, 1, 1]),
        GREETING + bytes([5, 1, 0, 3, 0]),
        GREETING + bytes([5, 1, 0, 3, 3]) + b"abc",
        GREETING + bytes([5, 1, 0, 4]) + bytes(16),
        GREETING + bytes([5, 1, 0, 9, 0]),
        GREETING + bytes([5, 3, 0, 1, 127, 0, 0, 1, 0, 53]),
        GREETING + bytes([5, 2, 0, 1, 127, 0, 0, 1, 0, 53]),
    ],
)
def test_rejected_requests(data):
    with pytest.raises(Socks5Error):
        Socks5Handshake().feed(data)


def test_unknown_address_type_waits_for_a_byte():
    shake = Socks5Handshake()
    reply, request = shake.feed(GREETING + bytes([5, 1, 0, 9]))
    assert (reply, request) == (bytes([5, 0]), None)
    with pytest.raises(Socks5Error):
        shake.feed(b"\x00")


def test_connect_reply():
    ok = build_connect_reply(True)
    failed = build_connect_reply(False)
    assert ok == bytes([5, 0, 0, 1, 0, 0, 0, 0, 0, 0])
    assert failed[1] == 1
    assert failed[:1] + failed[2:] == ok[:1] + ok[2:]