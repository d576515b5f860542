from posttunnel.sessionbuffer import BLOCK_SIZE, SessionBuffer


def drain(buffer, step=10_000):
    parts = []
    while True:
        chunk = buffer.take(step)
        if not chunk:
            return b"".join(parts)
        parts.append(chunk)


def test_push_take_round_trip():
    buffer = SessionBuffer()
    data = bytes(range(256)) * 5
    buffer.push(data)
    assert len(buffer) == len(data)
    assert drain(buffer) == data
    assert len(buffer) == 0


def test_take_stops_at_block_boundary():
    buffer = SessionBuffer()
    buffer.push(bytes(BLOCK_SIZE + 100))
    assert len(buffer.take(BLOCK_SIZE * 2)) == BLOCK_SIZE
    assert len(buffer.take(BLOCK_SIZE * 2)) == 100


def test_take_respects_wanted():
    buffer = SessionBuffer()
    buffer.push(b"abcdefgh")
    assert buffer.take(3) == b"abc"
    assert buffer.take(3) == b"def"
    assert len(buffer) == 2


def test_take_zero_and_empty():
    buffer = SessionBuffer()
    assert buffer.take(10) == b""
    buffer.push(b"xy")
    assert buffer.take(0) == b""
    assert len(buffer) == 2


def test_many_small_pushes_keep_order():
    buffer = SessionBuffer()
    pieces = [bytes([i % 256]) * (i % 37 + 1) for i in range(200)]
    for piece in pieces:
        buffer.push(piece)
    assert len(buffer) == sum(map(len, pieces))
    assert drain(buffer, step=77) == b"".join(pieces)


def test_interleaved_push_and_take():
    buffer = SessionBuffer()
    buffer.push(b"a" * 300)
    first = buffer.take(250)
    buffer.push(b"b" * 400)
    rest = drain(buffer)
    assert first + rest == b"a" * 300 + b"b" * 400


def test_push_after_full_consumption():
    buffer = SessionBuffer()
    buffer.push(b"q" * BLOCK_SIZE)
    assert buffer.take(BLOCK_SIZE) == b"q" * BLOCK_SIZE
    buffer.push(b"next")
    assert drain(buffer) == b"next"


def test_empty_push_is_ignored():
    buffer = SessionBuffer()
    buffer.push(b"")
    buffer.push(b"data")
    assert drain(buffer) == b"data"