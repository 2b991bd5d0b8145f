import asyncio

import aiohttp
import pytest
from prediction_client.errors import ApiError, StreamingNotSupportedError
from prediction_client.models import Prediction
from prediction_client.prediction_client import PredictionClient

EVENTS = [
    b"event: output\ndata: hello\n\n",
    b": heartbeat\n\n",
    b"event: output\ndata: \xff\xfe\n\n",
    b"id: 7\n\n",
    b"event: logs\ndata: line one\ndata: line two\n\n",
    b"event: done\ndata: {}\n\n",
    b"event: output\ndata: after done\n\n",
]


@pytest.mark.asyncio
async def test_stream_yields_events_until_done(server, client):
    """Test well-formed events are yielded in order and the stream ends at done."""
    server_instance, _ = server
    server_instance.stream_chunks = EVENTS

    events = [event async for event in client.stream("owner/name", {"prompt": "hi"})]

    assert [(event.event, event.data) for event in events] == [
        ("output", "hello"),
        ("logs", "line one\nline two"),
        ("done", "{}"),
    ]
    assert str(events[0]) == "hello"
    assert server_instance.created[0]["stream"] is True


@pytest.mark.asyncio
async def test_stream_prediction_without_stream_url(server, client):
    """Test a prediction created without streaming can't be streamed."""
    prediction = await client.create_prediction({}, model="owner/name")

    with pytest.raises(StreamingNotSupportedError):
        client.stream_prediction(prediction)


@pytest.mark.asyncio
async def test_stream_is_single_use(server, client):
    """Test iterating the same stream twice is refused."""
    server_instance, _ = server
    server_instance.stream_chunks = [b"event: done\ndata: {}\n\n"]
    prediction = await client.create_prediction({}, model="owner/name", stream=True)

    stream = client.stream_prediction(prediction)
    events = [event async for event in stream]

    assert len(events) == 1
    with pytest.raises(RuntimeError):
        stream.__aiter__()


@pytest.mark.asyncio
async def test_stream_cancelled_by_signal(server, client):
    """Test setting the signal ends the stream and drops the connection."""
    server_instance, _ = server
    server_instance.stream_chunks = [b"event: output\ndata: first\n\n"]
    server_instance.hold_stream = True
    signal = asyncio.Event()
    received = []

    async for event in client.stream("owner/name", {}, signal=signal):
        received.append(event.data)
        signal.set()

    assert received == ["first"]
    await asyncio.wait_for(server_instance.stream_closed.wait(), timeout=5)


@pytest.mark.asyncio
async def test_stream_abandoned(server, client):
    """Test closing the iterator early releases the connection."""
    server_instance, _ = server
    server_instance.stream_chunks = [b"event: output\ndata: first\n\n"]
    server_instance.hold_stream = True
    prediction = await client.create_prediction({}, model="owner/name", stream=True)

    events = client.stream_prediction(prediction).__aiter__()
    first = await events.__anext__()
    await events.aclose()

    assert first.data == "first"
    await asyncio.wait_for(server_instance.stream_closed.wait(), timeout=5)


@pytest.mark.asyncio
async def test_stream_http_error(server, client, config):
    """Test a failing stream endpoint raises an ApiError without retrying."""
    server_instance, _ = server
    prediction = Prediction(
        id="missing",
        status="starting",
        urls={"stream": f"{config.base_url}/predictions/missing/stream"},
    )

    with pytest.raises(ApiError) as exc_info:
        async for _ in client.stream_prediction(prediction):
            pass

    assert exc_info.value.status == 404
    assert server_instance.hits["GET /predictions/{id}/stream"] == 1


@pytest.mark.asyncio
async def test_stream_outlives_request_timeout(server, config):
    """Test a stream stays open longer than the per-request timeout."""
    server_instance, _ = server
    server_instance.stream_chunks = [
        b"event: output\ndata: one\n\n",
        b"event: output\ndata: two\n\n",
        b"event: output\ndata: three\n\n",
        b"event: done\ndata: {}\n\n",
    ]
    server_instance.chunk_delay = 0.4

    async with PredictionClient(config.model_copy(update={"timeout": 0.5})) as client:
        events = [event.data async for event in client.stream("owner/name", {})]

    assert events == ["one", "two", "three", "{}"]


@pytest.mark.asyncio
async def test_stream_connection_dropped(server, client):
    """Test a connection lost mid-stream raises after the events already received."""
    server_instance, _ = server
    server_instance.stream_chunks = [b"event: output\ndata: first\n\n"]
    server_instance.chunk_delay = 0.2
    server_instance.drop_stream = True
    received = []

    with pytest.raises(aiohttp.ClientError):
        async for event in client.stream("owner/name", {}):
            received.append(event.data)

    assert received == ["first"]
    assert server_instance.hits["GET /predictions/{id}/stream"] == 1


@pytest.mark.asyncio
async def test_stream_consumer_cancelled_leaves_no_tasks(server, client):
    """Test cancelling the consuming task cleans up the pending reads."""
    server_instance, _ = server
    server_instance.stream_chunks = [b"event: output\ndata: first\n\n"]
    server_instance.hold_stream = True
    signal = asyncio.Event()
    first_received = asyncio.Event()

    async def consume():
        async for _ in client.stream("owner/name", {}, signal=signal):
            first_received.set()

    task = asyncio.create_task(consume())
    await asyncio.wait_for(first_received.wait(), timeout=5)
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0)

    leaked = [
        pending
        for pending in asyncio.all_tasks()
        if getattr(pending.get_coro(), "__qualname__", "")
        in ("Event.wait", "StreamReader.readline")
    ]
    assert leaked == []
    assert not signal.is_set()
