"""
Tests for the stream relay: framing, heartbeats, cancellation and write serialization.
"""
import asyncio
import json

import pytest

from chat_relay.core.streaming import (
    HEARTBEAT,
    OllamaStreamFramer,
    RelayState,
    RelayStreamingResponse,
    StreamRelay,
)


async def records_from(lines, delay: float = 0.0):
    for line in lines:
        if delay:
            await asyncio.sleep(delay)
        yield line


class FakeClient:
    """Collects writes; can fail on demand."""

    def __init__(self, fail_on=None):
        self.writes = []
        self.fail_on = fail_on or (lambda payload: False)

    async def write(self, payload: bytes) -> None:
        if self.fail_on(payload):
            raise OSError("broken pipe")
        self.writes.append(payload)

    @property
    def data_events(self):
        return [w for w in self.writes if w != HEARTBEAT]


class FakeUpstream:
    def __init__(self):
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


def make_relay(records, client, upstream, disconnected: asyncio.Event = None, **kwargs) -> StreamRelay:
    disconnected = disconnected or asyncio.Event()
    return StreamRelay(
        records,
        write=client.write,
        close_upstream=upstream.aclose,
        wait_for_disconnect=disconnected.wait,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_three_records_then_eof():
    client, upstream = FakeClient(), FakeUpstream()
    lines = ['data: {"n": 1}', "", 'data: {"n": 2}', "   ", 'data: {"n": 3}', ""]

    relay = make_relay(records_from(lines), client, upstream)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert client.writes == [
        b'data: {"n": 1}\n\n',
        b'data: {"n": 2}\n\n',
        b'data: {"n": 3}\n\n',
    ]
    assert HEARTBEAT not in client.writes
    assert relay.state == RelayState.CLOSED
    assert upstream.closed


@pytest.mark.asyncio
async def test_done_sentinel_ends_stream():
    client, upstream = FakeClient(), FakeUpstream()
    consumed = []

    async def records():
        for line in ["data: {}", "data: [DONE]", "data: late"]:
            consumed.append(line)
            yield line

    relay = make_relay(records(), client, upstream)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert client.writes == [b"data: {}\n\n", b"data: [DONE]\n\n"]
    assert "data: late" not in consumed
    assert upstream.closed


@pytest.mark.asyncio
async def test_heartbeat_sent_during_silence():
    client, upstream = FakeClient(), FakeUpstream()

    async def records():
        yield "data: first"
        await asyncio.sleep(0.3)
        yield "data: second"

    relay = make_relay(records(), client, upstream, heartbeat_interval=0.05)
    await asyncio.wait_for(relay.run(), timeout=2)

    first = client.writes.index(b"data: first\n\n")
    second = client.writes.index(b"data: second\n\n")
    assert HEARTBEAT in client.writes[first + 1:second]
    assert relay.heartbeats_written >= 1


@pytest.mark.asyncio
async def test_no_heartbeat_while_data_flows():
    client, upstream = FakeClient(), FakeUpstream()

    relay = make_relay(records_from([f"data: {i}" for i in range(10)], delay=0.01), client, upstream, heartbeat_interval=0.5)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert HEARTBEAT not in client.writes
    assert len(client.writes) == 10


@pytest.mark.asyncio
async def test_client_disconnect_stops_reading_and_closes_upstream():
    client, upstream = FakeClient(), FakeUpstream()
    disconnected = asyncio.Event()
    reads = []
    stalled = asyncio.Event()

    async def records():
        reads.append(1)
        yield "data: 1"
        disconnected.set()
        await stalled.wait() # upstream goes quiet, never resumes
        reads.append(2)
        yield "data: 2"

    relay = make_relay(records(), client, upstream, disconnected=disconnected)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert reads == [1]
    assert client.writes == [b"data: 1\n\n"]
    assert relay.client_disconnected
    assert relay.state == RelayState.CLOSED
    assert upstream.closed


@pytest.mark.asyncio
async def test_write_failure_cancels_relay():
    client = FakeClient(fail_on=lambda payload: payload.startswith(b"data: 2"))
    upstream = FakeUpstream()

    relay = make_relay(records_from(["data: 1", "data: 2", "data: 3"]), client, upstream)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert client.writes == [b"data: 1\n\n"]
    assert relay.state == RelayState.CLOSED
    assert not relay.client_disconnected
    assert upstream.closed


@pytest.mark.asyncio
async def test_heartbeat_failure_cancels_relay():
    client = FakeClient(fail_on=lambda payload: payload == HEARTBEAT)
    upstream = FakeUpstream()
    never = asyncio.Event()

    async def records():
        yield "data: 1"
        await never.wait()
        yield "data: 2"

    relay = make_relay(records(), client, upstream, heartbeat_interval=0.05)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert client.writes == [b"data: 1\n\n"]
    assert relay.state == RelayState.CLOSED
    assert upstream.closed


@pytest.mark.asyncio
async def test_upstream_read_error_closes_quietly():
    client, upstream = FakeClient(), FakeUpstream()

    async def records():
        yield "data: 1"
        raise ConnectionResetError("upstream reset")

    relay = make_relay(records(), client, upstream)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert client.writes == [b"data: 1\n\n"]
    assert relay.state == RelayState.CLOSED
    assert upstream.closed


@pytest.mark.asyncio
async def test_heartbeat_never_interleaves_with_a_data_write():
    upstream = FakeUpstream()
    active = 0
    overlaps = 0
    writes = []

    async def slow_write(payload: bytes) -> None:
        nonlocal active, overlaps
        active += 1
        if active > 1:
            overlaps += 1
        await asyncio.sleep(0.02)
        writes.append(payload)
        active -= 1

    relay = StreamRelay(
        records_from([f"data: {i}" for i in range(5)], delay=0.03),
        write=slow_write,
        close_upstream=upstream.aclose,
        wait_for_disconnect=asyncio.Event().wait,
        heartbeat_interval=0.01,
    )
    await asyncio.wait_for(relay.run(), timeout=5)

    assert overlaps == 0
    assert [w for w in writes if w != HEARTBEAT] == [f"data: {i}\n\n".encode() for i in range(5)]


def test_ollama_framer_emits_chunks_and_done():
    framer = OllamaStreamFramer("gpt-4o")

    middle = framer(json.dumps({"model": "llama2", "message": {"role": "assistant", "content": "Hel"}, "done": False}))
    last = framer(json.dumps({"model": "llama2", "message": {"role": "assistant", "content": ""}, "done": True}))

    assert len(middle) == 1
    chunk = json.loads(middle[0][len("data: "):])
    assert chunk["object"] == "chat.completion.chunk"
    assert chunk["model"] == "gpt-4o"
    assert chunk["choices"][0]["delta"]["content"] == "Hel"
    assert chunk["choices"][0]["finish_reason"] is None

    assert last[-1] == "data: [DONE]"
    final = json.loads(last[0][len("data: "):])
    assert final["choices"][0]["finish_reason"] == "stop"
    assert final["id"] == chunk["id"]


def test_ollama_framer_skips_garbage():
    assert OllamaStreamFramer("gpt-4o")("not json") == []


@pytest.mark.asyncio
async def test_streaming_response_stops_on_asgi_disconnect():
    upstream = FakeUpstream()
    sent = []
    disconnect = asyncio.Event()
    stalled = asyncio.Event()

    async def records():
        yield "data: 1"
        await stalled.wait()
        yield "data: 2"

    async def receive():
        await disconnect.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)
        if message["type"] == "http.response.body" and message["body"]:
            disconnect.set()

    response = RelayStreamingResponse(records(), close_upstream=upstream.aclose)
    await asyncio.wait_for(response({"type": "http"}, receive, send), timeout=2)

    start = sent[0]
    assert start["type"] == "http.response.start"
    headers = dict(start["headers"])
    assert headers[b"content-type"].startswith(b"text/event-stream")
    assert headers[b"cache-control"] == b"no-cache"
    assert b"content-length" not in headers
    assert [m["body"] for m in sent[1:]] == [b"data: 1\n\n"]
    assert upstream.closed
    assert response.relay.state == RelayState.CLOSED


@pytest.mark.asyncio
async def test_each_upstream_line_is_its_own_event():
    client, upstream = FakeClient(), FakeUpstream()
    lines = ["event: message", 'data: {"n": 1}', ""]

    relay = make_relay(records_from(lines), client, upstream)
    await asyncio.wait_for(relay.run(), timeout=2)

    assert client.writes == [b"event: message\n\n", b'data: {"n": 1}\n\n']
