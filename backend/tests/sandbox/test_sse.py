"""Tests for SSE parsing and the cancellable agent EventStream.

The cancellation tests use a response body that emits one event and then
blocks until it is closed, standing in for an agent that is still working.
"""

import asyncio
import json

import httpx
import pytest

from orchestrator.core.exceptions import NotFoundError, OperationFailedError, SandboxUnavailableError
from orchestrator.sandbox.sse import AgentEvent, EventStream, parse_sse

pytestmark = pytest.mark.unit


def sse(*events: tuple[str, dict]) -> bytes:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode()


def sse_response(body: bytes) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)


async def _lines(*items: str):
    for item in items:
        yield item


async def _collect(iterator) -> list[AgentEvent]:
    return [event async for event in iterator]


class HangingStream(httpx.AsyncByteStream):
    """Yields one chunk, then blocks until closed."""

    def __init__(self, first: bytes):
        self.first = first
        self.closed = False
        self._release = asyncio.Event()

    async def __aiter__(self):
        yield self.first
        await self._release.wait()

    async def aclose(self) -> None:
        self.closed = True
        self._release.set()


def _stream(handler, operation: str = "plan") -> tuple[EventStream, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    request = http.build_request("POST", "http://sandbox-agent:9000/api/plan", json={"query": "x"})
    return EventStream(http, request, "sess-1", operation), http


# =============================================================================
# parse_sse
# =============================================================================


async def test_parse_sse_typed_events():
    """event: lines name the event; data is JSON-decoded."""
    events = await _collect(
        parse_sse(_lines("event: tool_call", 'data: {"name": "read_file"}', "", "event: done", "data: {}", ""))
    )
    assert [e.type for e in events] == ["tool_call", "done"]
    assert events[0].data == {"name": "read_file"}


async def test_parse_sse_untyped_json_with_type_field():
    """Messages without an event line use the payload's type field."""
    events = await _collect(parse_sse(_lines('data: {"type": "message", "data": {"text": "hi"}}', "")))
    assert events == [AgentEvent(type="message", data={"text": "hi"})]


async def test_parse_sse_skips_comments_and_joins_multiline_data():
    """Comment lines are ignored and data lines are joined with newlines."""
    events = await _collect(parse_sse(_lines(": keep-alive", "event: message", "data: line one", "data: line two", "")))
    assert events == [AgentEvent(type="message", data="line one\nline two")]


async def test_parse_sse_stops_at_done_sentinel():
    """Nothing after [DONE] is emitted."""
    events = await _collect(
        parse_sse(_lines("event: message", 'data: "a"', "", "data: [DONE]", "", "event: message", 'data: "b"', ""))
    )
    assert [e.data for e in events] == ["a"]


async def test_parse_sse_flushes_trailing_message():
    """A final message without a blank line is still emitted."""
    events = await _collect(parse_sse(_lines("event: done", 'data: {"status": "success"}')))
    assert events == [AgentEvent(type="done", data={"status": "success"})]


def test_to_sse_round_trips_through_parser():
    """Relayed events use the event/data framing."""
    assert AgentEvent(type="done", data={"ok": True}).to_sse() == 'event: done\ndata: {"ok": true}\n\n'


# =============================================================================
# EventStream
# =============================================================================


async def test_stream_ends_after_terminal_event():
    """Iteration stops at done even if the body continues."""
    body = sse(("message", {"text": "hi"}), ("done", {"status": "success"}), ("message", {"text": "late"}))
    stream, http = _stream(lambda request: sse_response(body))

    async with stream:
        events = await _collect(stream)
    await http.aclose()

    assert [e.type for e in events] == ["message", "done"]
    assert stream.closed


async def test_stream_accepts_done_sentinel_as_end():
    """A bare [DONE] sentinel is a clean end of stream."""
    body = sse(("message", {"text": "hi"})) + b"data: [DONE]\n\n"
    stream, http = _stream(lambda request: sse_response(body))

    async with stream:
        events = await _collect(stream)
    await http.aclose()

    assert [e.type for e in events] == ["message"]


async def test_stream_premature_eof_is_unavailable():
    """Connection ending without a terminal event means the sandbox went away."""
    stream, http = _stream(lambda request: sse_response(sse(("tool_call", {"name": "edit"}))))

    received = []
    with pytest.raises(SandboxUnavailableError, match="ended before a terminal event"):
        async with stream:
            async for event in stream:
                received.append(event)
    await http.aclose()

    assert [e.type for e in received] == ["tool_call"]


async def test_stream_http_404_is_not_found():
    """Missing endpoint inside the sandbox."""
    stream, http = _stream(lambda request: httpx.Response(404, json={"error": "nope"}))

    with pytest.raises(NotFoundError):
        await stream.__anext__()
    await http.aclose()


async def test_stream_http_500_is_operation_failed():
    """Agent error responses surface as OperationFailedError."""
    stream, http = _stream(lambda request: httpx.Response(500, text="agent crashed"))

    with pytest.raises(OperationFailedError, match="agent crashed"):
        await stream.__anext__()
    await http.aclose()


async def test_stream_connect_error_is_unavailable():
    """Transport failures map to SandboxUnavailableError."""

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    stream, http = _stream(refuse)
    with pytest.raises(SandboxUnavailableError):
        await stream.__anext__()
    await http.aclose()


# =============================================================================
# Cancellation
# =============================================================================


async def _start_reader(stream: EventStream):
    received: list[AgentEvent] = []
    first = asyncio.Event()

    async def read():
        async for event in stream:
            received.append(event)
            first.set()

    task = asyncio.create_task(read())
    await asyncio.wait_for(first.wait(), timeout=2)
    return task, received


async def test_aclose_from_another_task_closes_upstream():
    """Closing the stream ends a parked reader and closes the connection."""
    body = HangingStream(sse(("message", {"text": "thinking"})))
    stream, http = _stream(
        lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=body)
    )

    task, received = await _start_reader(stream)
    await stream.aclose()
    await asyncio.wait_for(task, timeout=2)
    await http.aclose()

    assert body.closed
    assert stream.closed
    assert [e.type for e in received] == ["message"]
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


async def test_task_cancel_closes_upstream_and_yields_nothing_more():
    """Cancelling the consuming task propagates to the upstream connection."""
    body = HangingStream(sse(("message", {"text": "thinking"})))
    stream, http = _stream(
        lambda request: httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=body)
    )

    task, received = await _start_reader(stream)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await http.aclose()

    assert body.closed
    assert stream.closed
    assert len(received) == 1
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
