import asyncio

import pytest

from model_sync.core.cancellation import CancellationToken
from model_sync.core.errors import NetworkError, RunCancelled
from model_sync.models.relay_buffer import BufferClosed, RelayBuffer


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        RelayBuffer(0)


@pytest.mark.asyncio
async def test_stream_passes_through_bounded_buffer():
    buffer = RelayBuffer(10)
    data = bytes(range(200))
    received = bytearray()

    async def produce():
        for i in range(0, len(data), 7):
            await buffer.write(data[i:i + 7])
        await buffer.close()

    async def consume():
        async for chunk in buffer.iter_chunks(3):
            received.extend(chunk)
            await asyncio.sleep(0)

    await asyncio.gather(produce(), consume())

    assert bytes(received) == data
    assert buffer.bytes_written == buffer.bytes_read == len(data)
    assert 0 < buffer.high_water_mark <= 10


@pytest.mark.asyncio
async def test_writer_waits_for_reader():
    buffer = RelayBuffer(8)
    writer = asyncio.ensure_future(buffer.write(b"x" * 20))
    await asyncio.sleep(0.01)

    assert not writer.done()
    assert buffer.buffered == 8

    assert await buffer.read(100) == b"x" * 8
    assert await buffer.read(100) == b"x" * 8
    assert await buffer.read(100) == b"x" * 4
    await writer
    assert buffer.high_water_mark == 8


@pytest.mark.asyncio
async def test_buffered_data_survives_close():
    buffer = RelayBuffer(16)
    await buffer.write(b"tail")
    await buffer.close()

    assert await buffer.read() == b"tail"
    assert await buffer.read() == b""
    with pytest.raises(BufferClosed):
        await buffer.write(b"more")


@pytest.mark.asyncio
async def test_error_reaches_both_sides():
    buffer = RelayBuffer(4)
    reader = asyncio.ensure_future(buffer.read())
    await asyncio.sleep(0)

    await buffer.close_with_error(NetworkError("upstream reset"))

    with pytest.raises(NetworkError, match="upstream reset"):
        await reader
    with pytest.raises(NetworkError):
        await buffer.write(b"data")


@pytest.mark.asyncio
async def test_cancellation_wakes_blocked_reader():
    token = CancellationToken()
    buffer = RelayBuffer(4, cancel_token=token)
    reader = asyncio.ensure_future(buffer.read())
    await asyncio.sleep(0)

    token.cancel()

    with pytest.raises(RunCancelled):
        await asyncio.wait_for(reader, timeout=1)


@pytest.mark.asyncio
async def test_close_stops_watching_for_cancellation():
    token = CancellationToken()
    before = len(asyncio.all_tasks())
    buffer = RelayBuffer(16, cancel_token=token)

    await buffer.write(b"abc")
    assert len(asyncio.all_tasks()) == before + 1

    await buffer.close()
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert len(asyncio.all_tasks()) == before
    assert await buffer.read() == b"abc"
    assert len(asyncio.all_tasks()) == before
    token.cancel()
    assert await buffer.read() == b""
