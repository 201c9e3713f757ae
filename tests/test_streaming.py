import asyncio
import json

import pytest

from chat_agent.errors import ModelStreamError
from chat_agent.models import DoneEvent, ErrorEvent, TokenEvent, ToolCallEvent, ToolResultEvent
from chat_agent.streaming import encode_event, merge_streams


async def _tokens(*texts: str):
    for text in texts:
        await asyncio.sleep(0)
        yield TokenEvent(text)


async def _collect(stream) -> list:
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_tool_results_precede_tokens():
    results = [ToolResultEvent("call-1", {"temp": 18}), ToolResultEvent("call-2", "ok")]

    events = await _collect(merge_streams(results, _tokens("It is ", "18C")))

    assert events[:2] == results
    assert events[2:] == [TokenEvent("It is "), TokenEvent("18C"), DoneEvent()]


@pytest.mark.asyncio
async def test_done_is_emitted_once_after_finish_callback():
    order: list[str] = []

    async def on_finish() -> None:
        order.append("finish")

    events = []
    async for event in merge_streams([], _tokens("a"), on_finish=on_finish):
        order.append(type(event).__name__)
        events.append(event)

    assert order == ["TokenEvent", "finish", "DoneEvent"]
    assert sum(isinstance(event, DoneEvent) for event in events) == 1


@pytest.mark.asyncio
async def test_model_error_becomes_terminal_error_event():
    finished = []

    async def failing():
        yield TokenEvent("partial")
        raise ModelStreamError("upstream closed the connection")

    async def on_finish() -> None:
        finished.append(True)

    events = await _collect(merge_streams([ToolResultEvent("call-1", 1)], failing(), on_finish=on_finish))

    assert events == [
        ToolResultEvent("call-1", 1),
        TokenEvent("partial"),
        ErrorEvent(kind="model_stream", detail="upstream closed the connection"),
    ]
    assert finished == []



@pytest.mark.asyncio
async def test_unexpected_failure_is_not_reported_as_model_error():
    async def broken():
        yield TokenEvent("partial")
        raise RuntimeError("history store is locked")

    events = await _collect(merge_streams([], broken()))

    assert events == [TokenEvent("partial"), ErrorEvent(kind="internal", detail="history store is locked")]


@pytest.mark.asyncio
async def test_cancellation_stops_relaying_without_waiting_for_next_token():
    closed = []
    cancel = asyncio.Event()

    async def stalled():
        try:
            yield TokenEvent("first")
            await asyncio.Event().wait()
            yield TokenEvent("never")
        finally:
            closed.append(True)

    events = []
    async for event in merge_streams([], stalled(), cancel_event=cancel):
        events.append(event)
        if isinstance(event, TokenEvent):
            cancel.set()

    assert events == [TokenEvent("first"), DoneEvent(finish_reason="cancelled")]
    assert closed == [True]


@pytest.mark.asyncio
async def test_tool_call_events_are_relayed_in_order():
    async def step():
        yield TokenEvent("Let me check.")
        yield ToolCallEvent("call-9", "getWeather", {"city": "Paris"})

    events = await _collect(merge_streams([], step()))

    assert events == [
        TokenEvent("Let me check."),
        ToolCallEvent("call-9", "getWeather", {"city": "Paris"}),
        DoneEvent(),
    ]


def test_encode_event_frames():
    assert encode_event(TokenEvent('say "hi"')) == '0:"say \\"hi\\""\n'
    assert encode_event(ToolResultEvent("c1", {"temp": 18})) == 'a:{"toolCallId": "c1", "result": {"temp": 18}}\n'
    assert encode_event(DoneEvent()) == 'd:{"finishReason": "stop"}\n'

    call = encode_event(ToolCallEvent("c1", "getWeather", {"city": "Paris"}))
    assert call.startswith("9:")
    assert json.loads(call[2:]) == {"toolCallId": "c1", "toolName": "getWeather", "args": {"city": "Paris"}}

    error = encode_event(ErrorEvent("model_stream", "boom"))
    assert json.loads(error[2:]) == "model_stream: boom"
