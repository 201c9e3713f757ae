"""Merge tool results and model output into one client stream."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from chat_agent.errors import AgentError
from chat_agent.models import (
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
    ToolCallEvent,
    ToolResultEvent,
)

LOGGER = logging.getLogger(__name__)

_END = object()


async def merge_streams(
    tool_events: Iterable[StreamEvent],
    token_stream: AsyncIterator[StreamEvent],
    on_finish: Callable[[], Awaitable[None]] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> AsyncIterator[StreamEvent]:
    """Yield pre-resolved tool events, then relay the model stream.

    The result always ends with exactly one ``DoneEvent``, unless the model
    stream failed, in which case it ends with one ``ErrorEvent``. Events
    already yielded are never retracted.
    """

    for event in tool_events:
        yield event

    cancel_event = cancel_event or asyncio.Event()
    iterator = token_stream.__aiter__()
    cancel_waiter = asyncio.create_task(cancel_event.wait())
    next_item: asyncio.Future[Any] | None = None
    try:
        while True:
            next_item = asyncio.ensure_future(_next_or_end(iterator))
            done, _ = await asyncio.wait({next_item, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if next_item not in done:
                next_item.cancel()
                # Let the producer unwind before it is closed below.
                await asyncio.wait({next_item})
                LOGGER.info("Stream cancelled; no further tokens relayed")
                yield DoneEvent(finish_reason="cancelled")
                return

            try:
                item = next_item.result()
            except AgentError as exc:
                LOGGER.error("Error while streaming: %s", exc)
                yield ErrorEvent(kind=exc.kind, detail=str(exc))
                return
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Unexpected error while streaming")
                yield ErrorEvent(kind="internal", detail=str(exc))
                return

            if item is _END:
                break
            if isinstance(item, DoneEvent):
                continue
            yield item
            if isinstance(item, ErrorEvent):
                return
    finally:
        cancel_waiter.cancel()
        if next_item is not None and not next_item.done():
            next_item.cancel()
            await asyncio.wait({next_item})
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    if on_finish is not None:
        await on_finish()
    yield DoneEvent()


async def _next_or_end(iterator: AsyncIterator[StreamEvent]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


def encode_event(event: StreamEvent) -> str:
    """Frame one event as a line of the data stream protocol."""

    if isinstance(event, TokenEvent):
        return f"0:{json.dumps(event.text)}\n"
    if isinstance(event, ToolCallEvent):
        payload = {"toolCallId": event.tool_call_id, "toolName": event.tool_name, "args": event.arguments}
        return f"9:{json.dumps(payload, default=str)}\n"
    if isinstance(event, ToolResultEvent):
        payload = {"toolCallId": event.tool_call_id, "result": event.value}
        return f"a:{json.dumps(payload, default=str)}\n"
    if isinstance(event, ErrorEvent):
        return f"3:{json.dumps(f'{event.kind}: {event.detail}')}\n"
    if isinstance(event, DoneEvent):
        return f"d:{json.dumps({'finishReason': event.finish_reason})}\n"
    raise TypeError(f"Unsupported stream event: {event!r}")
