"""Server-sent event parsing and the cancellable agent event stream.

The agent answers plan/build/submit/deploy requests with ``text/event-stream``
bodies. ``EventStream`` wraps one such response: it is single-use, yields
typed ``AgentEvent`` objects until a terminal ``done``/``error`` event, and
closing or cancelling it closes the upstream HTTP response.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from orchestrator.core.exceptions import NotFoundError, OperationFailedError, SandboxUnavailableError

logger = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
TERMINAL_EVENTS = frozenset({"done", "error"})


class AgentEvent(BaseModel):
    type: str
    data: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_sse(self) -> str:
        """Re-encode for relaying to a downstream SSE consumer."""
        return f"event: {self.type}\ndata: {json.dumps(self.data)}\n\n"


def _decode(event_type: str | None, raw: str) -> AgentEvent | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = raw

    if event_type:
        return AgentEvent(type=event_type, data=parsed)
    if isinstance(parsed, dict) and "type" in parsed:
        return AgentEvent(type=str(parsed["type"]), data=parsed.get("data", parsed))

    logger.debug("sse_untyped_message_skipped", data=raw[:200])
    return None


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[AgentEvent]:
    """Turn SSE lines into events. Stops at the ``[DONE]`` sentinel."""
    event_type: str | None = None
    data_lines: list[str] = []

    async for line in lines:
        if line.startswith(":"):
            continue

        if line == "":
            if data_lines:
                raw = "\n".join(data_lines)
                if raw.strip() == DONE_SENTINEL:
                    return
                event = _decode(event_type, raw)
                if event is not None:
                    yield event
            event_type, data_lines = None, []
            continue

        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_type = value.strip()
        elif field == "data":
            data_lines.append(value)

    # Trailing message without a blank line
    if data_lines:
        raw = "\n".join(data_lines)
        if raw.strip() != DONE_SENTINEL:
            event = _decode(event_type, raw)
            if event is not None:
                yield event


class EventStream:
    """Single-use, cancellable async iterator over a streaming agent call.

    The request is sent lazily on the first ``__anext__``. Iteration ends after
    a terminal event; ``aclose()`` (or ``cancel()``) ends it early and releases
    the connection. Both are safe to call more than once.

    Usage:
        stream = await client.stream_plan("add a login page")
        async with stream:
            async for event in stream:
                ...
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        request: httpx.Request,
        session_id: str,
        operation: str,
    ):
        self._http = http_client
        self._request = request
        self.session_id = session_id
        self.operation = operation
        self._response: httpx.Response | None = None
        self._events: AsyncIterator[AgentEvent] | None = None
        self._closed = False
        self._saw_terminal = False
        self._saw_sentinel = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "EventStream":
        return self

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _open(self) -> None:
        try:
            response = await self._http.send(self._request, stream=True)
        except httpx.TransportError as e:
            raise SandboxUnavailableError(self.session_id, f"{self.operation}: {e!r}") from e

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            if response.status_code == 404:
                raise NotFoundError(f"{self.operation} endpoint not found in sandbox")
            raise OperationFailedError(f"{self.operation} request failed: {response.status_code} - {body[:500]}")

        self._response = response
        self._events = parse_sse(self._lines(response))

    async def _lines(self, response: httpx.Response) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            if line.strip() == f"data: {DONE_SENTINEL}":
                self._saw_sentinel = True
            yield line

    async def __anext__(self) -> AgentEvent:
        if self._closed or self._saw_terminal:
            await self.aclose()
            raise StopAsyncIteration

        try:
            if self._events is None:
                await self._open()
            event = await self._events.__anext__()
        except StopAsyncIteration:
            cancelled = self._closed
            await self.aclose()
            if not (cancelled or self._saw_terminal or self._saw_sentinel):
                raise SandboxUnavailableError(
                    self.session_id, f"{self.operation} stream ended before a terminal event"
                ) from None
            raise
        except asyncio.CancelledError:
            await self.aclose()
            raise
        except Exception as e:
            # Closed by another task while this one was parked on a read
            cancelled = self._closed
            await self.aclose()
            if cancelled:
                raise StopAsyncIteration from None
            if isinstance(e, httpx.TransportError):
                raise SandboxUnavailableError(self.session_id, f"{self.operation} stream broken: {e!r}") from e
            raise

        if event.is_terminal:
            self._saw_terminal = True
        return event

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Closing the response first unblocks a reader parked in another task
        if self._response is not None:
            await self._response.aclose()
            logger.debug("agent_stream_closed", session_id=self.session_id, operation=self.operation)
        if self._events is not None and not self._events.ag_running:
            await self._events.aclose()

    cancel = aclose
