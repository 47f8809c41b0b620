"""
Live relay of an upstream event stream to the client.

The upstream body is read as newline-delimited records. Every non-blank
record is framed into client events and each event goes out as one complete
write (send + flush). A heartbeat task keeps idle connections open and the
ASGI disconnect message cancels the relay promptly.

Framing is one event per upstream line. DeepSeek and OpenRouter only send
single-line `data:` events; an upstream event spanning several lines (say
`event:` then `data:`) would reach the client as one event per line.
"""

import os
import json
import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional

from pydantic import ValidationError
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from .translator import completion_id, ollama_tool_calls
from chat_relay.models.api import OllamaChatResponse

logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))

DEFAULT_HEARTBEAT_INTERVAL = 15.0
HEARTBEAT = b": heartbeat\n\n"
DONE_EVENT = "data: [DONE]"

Framer = Callable[[str], Iterable[str]]


class RelayState(str, Enum):
    STREAMING = "streaming"
    DRAINING = "draining" # client gone or write failed, reader still unwinding
    CLOSED = "closed"


def passthrough_framer(record: str) -> List[str]:
    """SSE upstreams already speak the client's event format."""
    return [record]


class OllamaStreamFramer:
    """Re-frames Ollama NDJSON records as `chat.completion.chunk` SSE events."""

    def __init__(self, model: str):
        self.model = model
        self.id = completion_id()
        self.created = int(time.time())

    def _chunk(self, delta: dict, finish_reason: Optional[str] = None) -> str:
        chunk = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }],
        }
        return f"data: {json.dumps(chunk, ensure_ascii=False)}"

    def __call__(self, record: str) -> List[str]:
        try:
            parsed = OllamaChatResponse.model_validate_json(record)
        except ValidationError as e:
            logger.warning(f"Skipping unparseable Ollama stream record: {e.error_count()} error(s)")
            return []

        delta: dict = {"role": "assistant", "content": parsed.message.content}
        tool_calls = ollama_tool_calls(parsed.message.tool_calls)
        if tool_calls:
            delta["tool_calls"] = [
                {"index": i, **call.model_dump()} for i, call in enumerate(tool_calls)
            ]

        if not parsed.done:
            return [self._chunk(delta)]
        finish_reason = "tool_calls" if tool_calls else (parsed.done_reason or "stop")
        return [self._chunk(delta, finish_reason), DONE_EVENT]


class StreamRelay:
    """
    Copies one upstream stream to one client.

    Exactly one background task (the heartbeat) runs beside the read loop;
    both write through the same lock so a heartbeat never lands inside a
    data event. All tasks are scoped to `run()`.
    """

    def __init__(
        self,
        records: AsyncIterator[str],
        write: Callable[[bytes], Awaitable[None]],
        close_upstream: Callable[[], Awaitable[None]],
        wait_for_disconnect: Callable[[], Awaitable[None]],
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        framer: Framer = passthrough_framer,
    ):
        self.records = records
        self._write = write
        self._close_upstream = close_upstream
        self._wait_for_disconnect = wait_for_disconnect
        self.heartbeat_interval = heartbeat_interval
        self.framer = framer

        self.state = RelayState.STREAMING
        self.client_disconnected = False
        self.events_written = 0
        self.heartbeats_written = 0
        self._lock = asyncio.Lock()
        self._last_write = 0.0

    async def _send(self, payload: bytes) -> None:
        async with self._lock:
            await self._write(payload)
            self._last_write = asyncio.get_running_loop().time()

    async def _pump(self) -> None:
        async for record in self.records:
            if not record.strip():
                continue
            for event in self.framer(record):
                await self._send(event.encode("utf-8") + b"\n\n")
                self.events_written += 1
                if event.strip() == DONE_EVENT:
                    logger.info("Received [DONE] from upstream.")
                    return
        logger.info("Upstream stream ended.")

    async def _heartbeat(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            delay = self._last_write + self.heartbeat_interval - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
                continue
            await self._send(HEARTBEAT)
            self.heartbeats_written += 1

    async def run(self) -> None:
        self._last_write = asyncio.get_running_loop().time()
        pump = asyncio.create_task(self._pump())
        heartbeat = asyncio.create_task(self._heartbeat())
        disconnect = asyncio.create_task(self._wait_for_disconnect())
        tasks = (pump, heartbeat, disconnect)

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if disconnect in done:
                self.client_disconnected = True
                self.state = RelayState.DRAINING
                logger.info("Client closed connection, ending stream")
            elif heartbeat in done:
                self.state = RelayState.DRAINING
                logger.error(f"Error sending heartbeat: {_describe(heartbeat)}")
            elif not pump.cancelled() and pump.exception() is not None:
                self.state = RelayState.DRAINING
                logger.error(f"Stream relay failed: {_describe(pump)}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            try:
                await self._close_upstream()
            except Exception as e:
                logger.warning(f"Error closing upstream stream: {type(e).__name__} - {e}")
            self.state = RelayState.CLOSED
            logger.info(f"Stream closed: events={self.events_written}, heartbeats={self.heartbeats_written}")


def _describe(task: asyncio.Task) -> str:
    exc = task.exception()
    return f"{type(exc).__name__} - {exc}" if exc else "finished unexpectedly"


class RelayStreamingResponse(StreamingResponse):
    """
    StreamingResponse that drives a StreamRelay over the raw ASGI send/receive pair.

    `receive` is watched for `http.disconnect` so a client hanging up cancels
    the relay without waiting for the next failed write.
    """

    def __init__(
        self,
        records: AsyncIterator[str],
        close_upstream: Callable[[], Awaitable[None]],
        status_code: int = 200,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        framer: Framer = passthrough_framer,
    ):
        super().__init__(
            records,
            status_code=status_code,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
        self.close_upstream = close_upstream
        self.heartbeat_interval = heartbeat_interval
        self.framer = framer
        self.relay: Optional[StreamRelay] = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async def write(chunk: bytes) -> None:
            await send({"type": "http.response.body", "body": chunk, "more_body": True})

        async def wait_for_disconnect() -> None:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    return

        self.relay = StreamRelay(
            self.body_iterator,
            write=write,
            close_upstream=self.close_upstream,
            wait_for_disconnect=wait_for_disconnect,
            heartbeat_interval=self.heartbeat_interval,
            framer=self.framer,
        )

        try:
            await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        except OSError as e:
            logger.info(f"Client gone before stream start: {e}")
            await self.close_upstream()
            return

        await self.relay.run()
        if not self.relay.client_disconnected:
            try:
                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except OSError as e:
                logger.info(f"Could not finish stream, client gone: {e}")
