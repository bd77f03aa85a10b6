import asyncio

from triagecore.sse import KEEP_ALIVE, format_sse, pump_events


def test_format_sse_adds_id_line_only_when_given():
    assert format_sse("ping", {"a": 1}) == 'event: ping\ndata: {"a":1}\n\n'
    assert format_sse("ping", {"a": 1}, event_id="7").startswith("id: 7\nevent: ping\n")


def test_pump_drains_queue_after_producer_finishes():
    async def scenario():
        queue = asyncio.Queue()
        done = asyncio.Event()
        await queue.put(("pipeline.started", {"trace_id": "t"}))
        await queue.put(("pipeline.completed", {"status": "completed"}))
        done.set()
        return [frame async for frame in pump_events(queue, done)]

    frames = asyncio.run(scenario())

    assert len(frames) == 2
    assert frames[0].startswith("id: 1\nevent: pipeline.started\n")
    assert frames[1].startswith("id: 2\nevent: pipeline.completed\n")


def test_pump_sends_keep_alive_while_idle():
    async def scenario():
        queue = asyncio.Queue()
        done = asyncio.Event()
        frames = []

        async def collect():
            async for frame in pump_events(queue, done, keep_alive_sec=0.01):
                frames.append(frame)

        consumer = asyncio.create_task(collect())
        await asyncio.sleep(0.05)
        await queue.put(("pipeline.completed", {}))
        done.set()
        await asyncio.wait_for(consumer, timeout=1)
        return frames

    frames = asyncio.run(scenario())

    assert KEEP_ALIVE in frames
    assert frames[-1].startswith("id: 1\nevent: pipeline.completed\n")
