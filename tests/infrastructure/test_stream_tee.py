"""
Unit tests for the one-producer/N-consumer tee in envlet.infrastructure.stream.
"""

import asyncio
import hashlib

import pytest

from envlet.infrastructure.stream import StreamTee, run_in_thread


def digest(reader):
    md5 = hashlib.md5()
    for chunk in iter(lambda: reader.read(7), b""):
        md5.update(chunk)
    return md5.hexdigest()


@pytest.mark.asyncio
async def test_every_reader_sees_every_byte():
    tee = StreamTee(max_chunks=2)
    first = tee.add_reader("first")
    second = tee.add_reader("second")
    chunks = [bytes([i]) * 100 for i in range(50)]

    def produce():
        for chunk in chunks:
            tee.feed(chunk)
        tee.close()

    _, one, two = await asyncio.gather(
        run_in_thread(produce), run_in_thread(digest, first), run_in_thread(digest, second)
    )

    expected = hashlib.md5(b"".join(chunks)).hexdigest()
    assert one == expected
    assert two == expected
    assert tee.bytes_written == 5000
    assert first.bytes_read == 5000


@pytest.mark.asyncio
async def test_abandoned_reader_does_not_block_producer():
    tee = StreamTee(max_chunks=1)
    quitter = tee.add_reader("quitter")
    stayer = tee.add_reader("stayer")

    def quit_early():
        quitter.read(10)
        quitter.abandon()

    def produce():
        for _ in range(20):
            tee.feed(b"x" * 10)
        tee.close()

    _, _, data = await asyncio.wait_for(
        asyncio.gather(run_in_thread(produce), run_in_thread(quit_early), run_in_thread(stayer.read)),
        timeout=10,
    )

    assert quitter.abandoned
    assert len(data) == 200


@pytest.mark.asyncio
async def test_failure_propagates_to_readers():
    tee = StreamTee()
    reader = tee.add_reader("reader")
    tee.feed(b"partial")
    tee.fail(OSError("connection reset"))

    with pytest.raises(OSError, match="connection reset"):
        await run_in_thread(reader.read)

    with pytest.raises(OSError):
        reader.read(1)


def test_drain_discards_remaining_bytes():
    tee = StreamTee()
    reader = tee.add_reader("reader")
    tee.feed(b"abcdef")
    tee.feed(b"ghij")
    tee.close()

    assert reader.read(2) == b"ab"
    assert reader.drain() == 8
    assert reader.read() == b""


def test_empty_chunks_are_ignored():
    tee = StreamTee()
    reader = tee.add_reader("reader")
    tee.feed(b"")
    tee.close()

    assert reader.read() == b""
    assert tee.bytes_written == 0
