"""HTTP framing that carries tunnel packets as ordinary POST exchanges."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass

__all__ = [
    "HttpDecodeError",
    "StartLine",
    "Header",
    "HeadParser",
    "ACK_FIELD",
    "UPLOAD_PATH",
    "POLL_PATH_PREFIX",
    "POLL_FILLER_SIZE",
    "MAX_LINE",
    "build_upload_request",
    "build_poll_request",
    "build_ack_response",
    "build_upload_response",
]

ACK_FIELD = struct.Struct("<I")
UPLOAD_PATH = "/uploadpfp"
POLL_PATH_PREFIX = "/image"
POLL_FILLER_SIZE = 64
MAX_LINE = 0x2000

COVER_HOST = "127.0.0.1"
_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,"
    "image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7"
)
_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36"
)


class HttpDecodeError(ValueError):
    """Raised when an HTTP head is malformed."""


@dataclass(frozen=True)
class StartLine:
    """The three space separated parts of a request or status line."""

    first: str
    second: str
    third: str


@dataclass(frozen=True)
class Header:
    name: str
    value: str


class HeadParser:
    """Incremental parser for an HTTP head; stops at the blank line."""

    def __init__(self) -> None:
        self._line = bytearray()
        self._started = False
        self.done = False

    def reset(self) -> None:
        """Prepare for the next message on the same connection."""
        self._line.clear()
        self._started = False
        self.done = False

    def feed(self, data: bytes, pos: int = 0) -> tuple[int, list[StartLine | Header]]:
        """Parse from ``data[pos:]`` and return the new position and items found.

        Parsing stops right after the blank line ending the head, so the
        returned position is where the body begins once ``done`` is set.
        """
        data = bytes(data)
        items: list[StartLine | Header] = []
        while pos < len(data) and not self.done:
            end = data.find(b"\n", pos)
            if end < 0:
                self._line += data[pos:]
                pos = len(data)
                self._check_length()
                break
            self._line += data[pos:end]
            pos = end + 1
            self._check_length()
            line = bytes(self._line)
            self._line.clear()
            if line.endswith(b"\r"):
                line = line[:-1]
            item = self._parse(line)
            if item is not None:
                items.append(item)
        return pos, items

    def _check_length(self) -> None:
        if len(self._line) > MAX_LINE:
            raise HttpDecodeError("header line too long")

    def _parse(self, line: bytes) -> StartLine | Header | None:
        text = line.decode("latin-1")
        if not self._started:
            parts = text.split(" ", 2)
            if len(parts) != 3 or not all(parts):
                raise HttpDecodeError(f"bad start line: {text!r}")
            self._started = True
            return StartLine(*parts)
        if not text:
            self.done = True
            return None
        name, sep, value = text.partition(":")
        if not sep or not name:
            raise HttpDecodeError(f"bad header line: {text!r}")
        return Header(name, value.strip(" \t"))


def _message(head_lines: list[str], body: bytes) -> bytes:
    head = "\r\n".join(head_lines) + "\r\n\r\n"
    return head.encode("latin-1") + body


def build_upload_request(ack: int, payload: bytes) -> bytes:
    """Request carrying packet ``ack`` from the client to the server."""
    body = ACK_FIELD.pack(ack) + bytes(payload)
    return _message(
        [
            f"POST {UPLOAD_PATH} HTTP/1.1",
            f"Accept: {_ACCEPT}",
            "Accept-Encoding: gzip, deflate, br",
            "Accept-Language: en-US,en;q=0.9",
            "Cache-Control: max-age=0",
            "Connection: Keep-Alive",
            f"Content-Length: {len(body)}",
            "Content-Type: multipart/form-data; boundary=----WebKitFormBoundarygbI3oA7gW8BaAfjl",
            f"Host: {COVER_HOST}",
            f"Origin: http://{COVER_HOST}",
            f"Referer: http://{COVER_HOST}/",
            "Upgrade-Insecure-Requests: 1",
            f"User-Agent: {_USER_AGENT}",
        ],
        body,
    )


def build_poll_request(ack: int) -> bytes:
    """Request asking the server for its packet, confirming up to ``ack``."""
    filler = os.urandom(POLL_FILLER_SIZE)
    return _message(
        [
            f"POST {POLL_PATH_PREFIX}{ack:x} HTTP/1.1",
            f"Host: {COVER_HOST}",
            f"Accept: {_ACCEPT}",
            "Accept-Encoding: gzip, deflate, br",
            "Accept-Language: en-US,en;q=0.9",
            "Cache-Control: no-cache",
            "Connection: Keep-Alive",
            f"Content-Length: {len(filler)}",
            f"User-Agent: {_USER_AGENT}",
        ],
        filler,
    )


def build_ack_response(ack: int, payload: bytes) -> bytes:
    """Response carrying packet ``ack`` from the server to the client."""
    body = ACK_FIELD.pack(ack) + bytes(payload)
    return _message(
        [
            "HTTP/1.1 200 OK",
            "Server: Apache",
            f"Content-Length: {len(body)}",
            "Connection: Keep-Alive",
        ],
        body,
    )


def build_upload_response() -> bytes:
    """Empty response confirming an upload."""
    return _message(
        [
            "HTTP/1.1 200 OK",
            "Date: Tue, 10 Oct 2023 09:40:44 GMT",
            "Server: Apache",
            "Last-Modified: Tue, 01 Mar 2011 09:44:44 GMT",
            'ETag: "26ce2-8c3c-49d68a5671b00"',
            "Accept-Ranges: bytes",
            "Content-Length: 0",
            "X-Powered-By: PleskLin",
            "MS-Author-Via: DAV",
            "Connection: Keep-Alive",
        ],
        b"",
    )