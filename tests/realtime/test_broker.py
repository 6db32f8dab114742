import pytest

from adlex_app.realtime.broker import CheckEvent, CheckEventBroker


@pytest.mark.asyncio
async def test_fan_out_in_publish_order():
    broker = CheckEventBroker()
    async with broker.subscribe(1) as a, broker.subscribe(1) as b, broker.subscribe(2) as other:
        broker.publish(CheckEvent("queued", 1))
        broker.publish(CheckEvent("processing", 1))
        assert broker.publish(CheckEvent("completed", 1)) == 2
        for sub in (a, b):
            types = [(await sub.next_event(timeout=1)).type for _ in range(3)]
            assert types == ["queued", "processing", "completed"]
        assert await other.next_event(timeout=0.01) is None


@pytest.mark.asyncio
async def test_unsubscribe_on_exit():
    broker = CheckEventBroker()
    async with broker.subscribe(1):
        assert broker.subscriber_count(1) == 1
    assert broker.subscriber_count(1) == 0
    assert broker.subscriber_count() == 0
    assert broker.publish(CheckEvent("queued", 1)) == 0


@pytest.mark.asyncio
async def test_overflow_drops_subscriber_and_reports_delivery_error():
    broker = CheckEventBroker(max_queue=2)
    async with broker.subscribe(1) as slow, broker.subscribe(1) as fast:
        broker.publish(CheckEvent("queued", 1))
        broker.publish(CheckEvent("processing", 1))
        await fast.next_event(timeout=1)
        await fast.next_event(timeout=1)
        broker.publish(CheckEvent("completed", 1))

        assert slow.overflowed
        assert broker.subscriber_count(1) == 1
        assert (await fast.next_event(timeout=1)).type == "completed"

        assert (await slow.next_event(timeout=1)).type == "queued"
        assert (await slow.next_event(timeout=1)).type == "processing"
        last = await slow.next_event(timeout=1)
        assert last.type == "delivery-error"
        assert last.is_terminal


def test_sse_frame_format():
    frame = CheckEvent("failed", 3, {"status": "failed", "error": "接続できません"}).to_sse()
    assert frame.startswith("event: failed\ndata: {")
    assert frame.endswith("\n\n")
    assert "接続できません" in frame
