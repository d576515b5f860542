import pytest

from posttunnel.httpwire import (
    ACK_FIELD,
    POLL_FILLER_SIZE,
    POLL_PATH_PREFIX,
    UPLOAD_PATH,
    Header,
    HeadParser,
    HttpDecodeError,
    StartLine,
    build_ack_response,
    build_poll_request,
    build_upload_request,
    build_upload_response,
)


def parse(message):
    parser = HeadParser()
    pos, items = parser.feed(message)
    assert parser.done
    start = items[0]
    headers = {item.name: item.value for item in items[1:]}
    return start, headers, message[pos:]


def test_upload_request_round_trip():
    payload = b"tunnel-bytes"
    start, headers, body = parse(build_upload_request(7, payload))
    assert start == StartLine("POST", UPLOAD_PATH, "HTTP/1.1")
    assert int(headers["Content-Length"]) == len(body)
    assert body == ACK_FIELD.pack(7) + payload
    assert headers["Connection"] == "Keep-Alive"


def test_poll_request_carries_hex_ack():
    start, headers, body = parse(build_poll_request(0x1A))
    assert start.second == POLL_PATH_PREFIX + "1a"
    assert len(body) == POLL_FILLER_SIZE
    assert int(headers["Content-Length"]) == POLL_FILLER_SIZE


def test_ack_response_round_trip():
    start, headers, body = parse(build_ack_response(3, b"data"))
    assert (start.second, start.third) == ("200", "OK")
    assert body == ACK_FIELD.pack(3) + b"data"
    assert int(headers["Content-Length"]) == len(body)


def test_upload_response_is_empty():
    start, headers, body = parse(build_upload_response())
    assert start == StartLine("HTTP/1.1", "200", "OK")
    assert headers["Content-Length"] == "0"
    assert body == b""


def test_byte_by_byte_feeding_matches():
    message = build_ack_response(1, b"xyz")
    whole = HeadParser().feed(message)[1]
    parser = HeadParser()
    items = []
    pos = 0
    while not parser.done:
        _, found = parser.feed(message[pos : pos + 1])
        items.extend(found)
        pos += 1
    assert items == whole
    assert message[pos:] == ACK_FIELD.pack(1) + b"xyz"


def test_header_value_is_stripped():
    _, items = HeadParser().feed(b"GET / HTTP/1.1\r\nX-Thing:   value \r\n\r\n")
    assert items[1] == Header("X-Thing", "value")


def test_reset_allows_next_message():
    parser = HeadParser()
    message = build_upload_response()
    parser.feed(message)
    parser.reset()
    pos, items = parser.feed(message)
    assert parser.done and pos == len(message)
    assert items[0].third == "OK"


@pytest.mark.parametrize(
    "message",
    [
        b"\r\n",
        b"BROKEN\r\n",
        b"GET / HTTP/1.1\r\nno colon here\r\n",
        b"GET / HTTP/1.1\r\n: empty name\r\n",
    ],
)
def test_malformed_heads(message):
    with pytest.raises(HttpDecodeError):
        HeadParser().feed(message)


def test_overlong_line():
    with pytest.raises(HttpDecodeError):
        HeadParser().feed(b"G" * 0x3000)