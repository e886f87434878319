import asyncio

import pytest

from search_agent.application.streaming.stream_manager import StreamManager
from search_agent.domain.errors import TransportError
from search_agent.domain.streaming.stream_channel import StreamChannel


async def collect(channel):
    return [frame async for frame in channel]


async def test_frames_arrive_in_order_then_close():
    channel = StreamChannel(maxsize=4)

    for i in range(3):
        await channel.send(f"frame {i}")
    await channel.close()

    assert await collect(channel) == ["frame 0", "frame 1", "frame 2"]
    assert channel.frames_sent == 3


async def test_send_waits_for_reader_instead_of_dropping():
    channel = StreamChannel(maxsize=2)

    async def produce():
        for i in range(6):
            await channel.send(str(i))
        await channel.close()

    producer = asyncio.create_task(produce())
    await asyncio.sleep(0.01)

    assert not producer.done()
    assert await collect(channel) == [str(i) for i in range(6)]
    await producer


async def test_send_after_close_fails():
    channel = StreamChannel()
    await channel.close()

    with pytest.raises(TransportError):
        await channel.send("late")


async def test_abort_wakes_reader_and_drops_queue():
    channel = StreamChannel(maxsize=4)
    await channel.send("queued")

    channel.abort()

    assert channel.aborted
    assert channel.closed
    assert await collect(channel) == []


async def test_abort_unblocks_waiting_reader():
    channel = StreamChannel()
    reader = asyncio.create_task(collect(channel))
    await asyncio.sleep(0.01)

    channel.abort()

    assert await asyncio.wait_for(reader, timeout=1) == []


def test_rejects_empty_queue():
    with pytest.raises(ValueError):
        StreamChannel(maxsize=0)


async def test_manager_streams_producer_output():
    manager = StreamManager(queue_size=2)

    async def producer(sink):
        for i in range(5):
            await sink(f"frame {i}")

    channel = await manager.open_stream("conv-1", producer)

    assert await collect(channel) == [f"frame {i}" for i in range(5)]
    assert manager.active_count == 0


async def test_new_stream_cancels_previous_one():
    manager = StreamManager()
    first_cancelled = asyncio.Event()

    async def blocking_producer(sink):
        await sink("first")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            first_cancelled.set()
            raise

    async def quick_producer(sink):
        await sink("second")

    first = await manager.open_stream("conv-1", blocking_producer)
    await asyncio.sleep(0.01)
    second = await manager.open_stream("conv-1", quick_producer)

    assert first_cancelled.is_set()
    assert first.aborted
    assert await collect(first) == []
    assert await collect(second) == ["second"]


async def test_streams_of_different_conversations_are_independent():
    manager = StreamManager()
    release = asyncio.Event()

    async def producer(sink):
        await release.wait()
        await sink("done")

    first = await manager.open_stream("conv-1", producer)
    second = await manager.open_stream("conv-2", producer)
    assert manager.active_count == 2

    release.set()
    assert await collect(first) == ["done"]
    assert await collect(second) == ["done"]


async def test_cancel_stream_only_cancels_matching_channel():
    manager = StreamManager()

    async def forever(sink):
        await asyncio.Event().wait()

    first = await manager.open_stream("conv-1", forever)
    second = await manager.open_stream("conv-1", forever)

    assert not manager.cancel_stream("conv-1", first)
    assert manager.active_count == 1
    assert manager.cancel_stream("conv-1", second)
    assert manager.active_count == 0
    assert not manager.cancel_stream("conv-1")
    assert await collect(second) == []


async def test_shutdown_cancels_everything():
    manager = StreamManager()

    async def forever(sink):
        await asyncio.Event().wait()

    channels = [await manager.open_stream(f"conv-{i}", forever) for i in range(3)]
    await manager.shutdown()

    assert manager.active_count == 0
    assert all(channel.aborted for channel in channels)
