"""End-to-end tests for the Orchestrator.

The real AsyncChatClient talks to an httpx.MockTransport that replays
scripted SSE turns, so the whole loop runs:
1. model turn with a tool call -> tool runs -> result appended -> next turn
2. content-only turn -> exchange ends with a done event
3. malformed or failed tool turns are discarded and retried against the budget
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from tactus_agent.config import LoopSpec, ProfileSpec, RetrySpec
from tactus_agent.core.context import ContextLedger, MessageBuilder
from tactus_agent.core.orchestrator import Orchestrator
from tactus_agent.llm.client import AsyncChatClient
from tactus_agent.llm.errors import ChatError, ErrorKind
from tactus_agent.tools.catalog import ToolCatalog, ToolParameter, ToolSpec, default_catalog
from tactus_agent.types import EventType, PromptContext, ResolvedToolCall, ToolResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _turn(content: str = "", calls: list[tuple[str, str, str]] = ()) -> httpx.Response:
    """One streamed model turn with optional content and tool calls."""
    chunks: list[dict] = []
    if content:
        chunks.append({"choices": [{"index": 0, "delta": {"content": content}}]})
    for slot, (call_id, name, arguments) in enumerate(calls):
        chunks.append({"choices": [{"index": 0, "delta": {"tool_calls": [{
            "index": slot, "id": call_id, "type": "function",
            "function": {"name": name, "arguments": ""},
        }]}}]})
        if arguments:
            chunks.append({"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": slot, "function": {"arguments": arguments},
            }]}}]})
    finish = "tool_calls" if calls else "stop"
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": finish}]})
    body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
    return httpx.Response(200, content=body.encode())


class _Model:
    """Scripted model endpoint; the last turn repeats."""

    def __init__(self, *turns: httpx.Response) -> None:
        self.turns = turns
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        idx = min(len(self.requests), len(self.turns) - 1)
        self.requests.append(json.loads(request.content))
        turn = self.turns[idx]
        return httpx.Response(turn.status_code, headers=turn.headers, content=turn.content)


class _Tools:
    """Tool executor recording every call."""

    def __init__(self, *outcomes: bool) -> None:
        self.outcomes = list(outcomes) or [True]
        self.calls: list[ResolvedToolCall] = []

    async def __call__(self, call: ResolvedToolCall) -> ToolResult:
        idx = min(len(self.calls), len(self.outcomes) - 1)
        self.calls.append(call)
        ok = self.outcomes[idx]
        text = f"{call.name} ok" if ok else f"{call.name} broke"
        return ToolResult(call.id, call.name, text, success=ok)


def _weather_catalog() -> ToolCatalog:
    return ToolCatalog([ToolSpec(
        "get_weather", "Current weather",
        [ToolParameter("city", "string", "City name")],
    )])


def _orchestrator(model: _Model, tools: _Tools | None = None, **loop) -> Orchestrator:
    client = AsyncChatClient(
        ProfileSpec(url="http://test/v1", api_key="k", model="m"),
        RetrySpec(max_attempts=3, jitter=0.0),
        transport=httpx.MockTransport(model),
    )
    return Orchestrator(
        client,
        catalog=_weather_catalog(),
        tool_executor=tools,
        builder=MessageBuilder("You are a test assistant."),
        loop=LoopSpec(**loop),
    )


async def _events(exchange) -> list:
    return [event async for event in exchange]


@pytest.fixture
def mock_sleep():
    with patch("tactus_agent.llm.client.asyncio.sleep", new_callable=AsyncMock) as m:
        yield m


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------

class TestToolCallThenRespond:
    async def test_two_iterations(self):
        model = _Model(
            _turn(calls=[("call_1", "get_weather", '{"city":"Paris"}')]),
            _turn("It is sunny in Paris."),
        )
        tools = _Tools(True)
        orch = _orchestrator(model, tools)

        exchange = orch.start("Weather in Paris?")
        start_len = len(exchange.ledger) - 1  # system prompt only
        events = await _events(exchange)

        assert exchange.status == "done"
        assert exchange.iterations == 2
        assert exchange.final_content == "It is sunny in Paris."
        assert [e.type for e in events] == [
            EventType.TOOL_CALL,
            EventType.THINKING,
            EventType.TOOL_RESULT,
            EventType.CONTENT,
            EventType.DONE,
        ]
        assert events[0].data == {
            "id": "call_1", "name": "get_weather", "arguments": {"city": "Paris"},
        }
        assert events[-1].data == {
            "content": "It is sunny in Paris.", "iterations": 2, "truncated": False,
        }
        assert tools.calls == [ResolvedToolCall("call_1", "get_weather", {"city": "Paris"})]

        wire = exchange.ledger.to_wire()
        assert len(wire) - start_len == 4
        assert [m["role"] for m in wire] == ["system", "user", "assistant", "tool", "assistant"]
        assert wire[2]["tool_calls"][0]["function"] == {
            "name": "get_weather", "arguments": '{"city":"Paris"}',
        }
        assert wire[3]["tool_call_id"] == "call_1"
        assert wire[3]["content"] == "get_weather ok"

        # The second request carries the tool round, and is kept for inspection.
        assert model.requests[1]["messages"] == wire[:4]
        assert exchange.last_request == model.requests[1]
        assert model.requests[0]["tools"][0]["function"]["name"] == "get_weather"

    async def test_direct_response(self):
        model = _Model(_turn("The answer is 42."))
        exchange = _orchestrator(model).start("What is the answer?")
        assert await exchange.run() == "The answer is 42."
        assert exchange.iterations == 1
        assert [m.role for m in exchange.ledger.messages] == ["system", "user", "assistant"]

    async def test_tool_calls_run_in_order(self):
        model = _Model(
            _turn(calls=[
                ("a", "get_weather", '{"city": "Oslo"}'),
                ("b", "get_weather", '{"city": "Rome"}'),
            ]),
            _turn("Done."),
        )
        tools = _Tools(True)
        exchange = _orchestrator(model, tools).start("Two cities")
        events = await _events(exchange)

        assert [c.id for c in tools.calls] == ["a", "b"]
        assert [e.data["id"] for e in events if e.type == EventType.TOOL_RESULT] == ["a", "b"]
        assert [m.tool_call_id for m in exchange.ledger.messages if m.role == "tool"] == ["a", "b"]

    async def test_exchange_is_single_use(self):
        exchange = _orchestrator(_Model(_turn("hi"))).start("hello")
        await exchange.run()
        with pytest.raises(RuntimeError):
            await exchange.run()


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------

class TestTransportFailures:
    async def test_auth_error_single_event(self, mock_sleep):
        model = _Model(httpx.Response(401, json={"error": "invalid key"}))
        exchange = _orchestrator(model).start("hi")
        events = await _events(exchange)

        assert len(model.requests) == 1
        assert [e.type for e in events] == [EventType.ERROR]
        assert events[0].data["kind"] == "auth_error"
        assert events[0].data["retrying"] is False
        assert exchange.status == "failed"
        assert exchange.error.kind == ErrorKind.AUTH_ERROR
        mock_sleep.assert_not_awaited()

    async def test_three_503_fail_without_fourth_call(self, mock_sleep):
        model = _Model(
            httpx.Response(503), httpx.Response(503), httpx.Response(503),
            _turn("never reached"),
        )
        exchange = _orchestrator(model).start("hi")
        with pytest.raises(ChatError) as exc_info:
            await exchange.run()

        assert exc_info.value.kind == ErrorKind.SERVER_ERROR
        assert len(model.requests) == 3
        assert exchange.status == "failed"

    async def test_retry_events_are_forwarded(self, mock_sleep):
        model = _Model(httpx.Response(503), _turn("ok"))
        exchange = _orchestrator(model).start("hi")
        events = await _events(exchange)
        assert [e.type for e in events] == [
            EventType.ERROR, EventType.THINKING, EventType.CONTENT, EventType.DONE,
        ]
        assert events[0].data["retrying"] is True


# ---------------------------------------------------------------------------
# Discard and retry
# ---------------------------------------------------------------------------

class TestToolParseErrors:
    async def test_malformed_arguments_never_execute(self):
        model = _Model(
            _turn(calls=[("bad", "get_weather", '{"city": ')]),
            _turn("Sorry, here it is."),
        )
        tools = _Tools(True)
        exchange = _orchestrator(model, tools).start("Weather?")
        events = await _events(exchange)

        assert tools.calls == []
        assert exchange.status == "done"
        assert exchange.tool_failures == 1
        assert exchange.iterations == 2
        errors = [e for e in events if e.type == EventType.ERROR]
        assert errors[0].data["kind"] == "tool_parse_error"
        assert errors[0].data["retrying"] is True
        assert "Tool call failed, asking the model again (1/3)" in [
            e.text for e in events if e.type == EventType.THINKING
        ]
        # The bad turn never reaches the ledger or the next request.
        assert [m.role for m in exchange.ledger.messages] == ["system", "user", "assistant"]
        assert model.requests[1]["messages"] == model.requests[0]["messages"]

    async def test_budget_three_allows_three_discards(self):
        model = _Model(_turn(calls=[("bad", "get_weather", "not json")]))
        tools = _Tools(True)
        exchange = _orchestrator(model, tools, tool_retry_budget=3).start("Weather?")
        events = await _events(exchange)

        assert len(model.requests) == 4
        assert exchange.tool_failures == 4
        assert exchange.status == "failed"
        assert exchange.error.kind == ErrorKind.TOOL_PARSE_ERROR
        assert tools.calls == []
        assert [e.data["retrying"] for e in events if e.type == EventType.ERROR] == [
            True, True, True, False,
        ]
        assert [m.role for m in exchange.ledger.messages] == ["system", "user"]

    async def test_zero_budget_fails_on_first_bad_turn(self):
        model = _Model(_turn(calls=[("bad", "get_weather", "[1]")]))
        exchange = _orchestrator(model, tool_retry_budget=0).start("Weather?")
        with pytest.raises(ChatError) as exc_info:
            await exchange.run()
        assert exc_info.value.kind == ErrorKind.TOOL_PARSE_ERROR
        assert len(model.requests) == 1


class TestToolExecutionErrors:
    async def test_failed_tool_turn_is_discarded(self):
        model = _Model(
            _turn(calls=[("first", "get_weather", '{"city": "Paris"}')]),
            _turn(calls=[("second", "get_weather", '{"city": "Paris"}')]),
            _turn("Sunny."),
        )
        tools = _Tools(False, True)
        exchange = _orchestrator(model, tools).start("Weather?")
        events = await _events(exchange)

        assert exchange.status == "done"
        assert exchange.tool_failures == 1
        assert [c.id for c in tools.calls] == ["first", "second"]
        kinds = [e.data["kind"] for e in events if e.type == EventType.ERROR]
        assert kinds == ["tool_execution_error"]
        wire = exchange.ledger.to_wire()
        assert [m["role"] for m in wire] == ["system", "user", "assistant", "tool", "assistant"]
        assert wire[2]["tool_calls"][0]["id"] == "second"
        assert all(m.get("tool_call_id") != "first" for m in wire)

    async def test_dispatch_stops_at_first_failure(self):
        model = _Model(
            _turn(calls=[
                ("a", "get_weather", '{"city": "Oslo"}'),
                ("b", "get_weather", '{"city": "Rome"}'),
            ]),
            _turn("Giving up on tools."),
        )
        tools = _Tools(False)
        exchange = _orchestrator(model, tools).start("Two cities")
        await exchange.run()
        assert [c.id for c in tools.calls] == ["a"]

    async def test_missing_executor_counts_as_failure(self):
        model = _Model(_turn(calls=[("a", "get_weather", "{}")]))
        exchange = _orchestrator(model, None, tool_retry_budget=1).start("hi")
        with pytest.raises(ChatError) as exc_info:
            await exchange.run()
        assert exc_info.value.kind == ErrorKind.TOOL_EXECUTION_ERROR
        assert len(model.requests) == 2


# ---------------------------------------------------------------------------
# Iteration cap
# ---------------------------------------------------------------------------

class TestIterationCap:
    async def test_cap_ends_with_done(self):
        model = _Model(_turn("Still working", calls=[("c", "get_weather", "{}")]))
        tools = _Tools(True)
        exchange = _orchestrator(model, tools, max_iterations=2).start("Loop forever")
        events = await _events(exchange)

        assert len(model.requests) == 2
        assert exchange.status == "done"
        assert exchange.truncated
        assert exchange.final_content == "Still working"
        assert events[-1].type == EventType.DONE
        assert events[-1].data["truncated"] is True
        assert [m.role for m in exchange.ledger.messages] == [
            "system", "user", "assistant", "tool", "assistant", "tool",
        ]

    async def test_discards_consume_iterations(self):
        model = _Model(_turn(calls=[("bad", "get_weather", "{")]))
        exchange = _orchestrator(model, max_iterations=2, tool_retry_budget=5).start("hi")
        events = await _events(exchange)
        assert len(model.requests) == 2
        assert exchange.status == "done"
        assert events[-1].data["truncated"] is True

    async def test_cap_after_discard_reports_kept_content(self):
        model = _Model(
            _turn("Looking it up", calls=[("c1", "get_weather", '{"city":"Paris"}')]),
            _turn("Half a thought", calls=[("c2", "get_weather", "{")]),
        )
        exchange = _orchestrator(
            model, _Tools(True), max_iterations=2, tool_retry_budget=5,
        ).start("hi")
        events = await _events(exchange)

        assert exchange.truncated
        assert exchange.final_content == "Looking it up"
        assert events[-1].data["content"] == "Looking it up"
        assert "Half a thought" not in [m.content for m in exchange.ledger.messages]


# ---------------------------------------------------------------------------
# Consumer stops iterating
# ---------------------------------------------------------------------------

class TestAbandonedExchange:
    @pytest.mark.parametrize("stop_at", [EventType.TOOL_CALL, EventType.TOOL_RESULT])
    async def test_closing_mid_turn_leaves_no_dangling_calls(self, stop_at):
        model = _Model(
            _turn(calls=[
                ("c1", "get_weather", '{"city":"Paris"}'),
                ("c2", "get_weather", '{"city":"Rome"}'),
            ]),
            _turn("Fine."),
        )
        orch = _orchestrator(model, _Tools(True))
        ledger = ContextLedger()
        events = orch.start("Weather?", ledger=ledger).__aiter__()
        while (await events.__anext__()).type != stop_at:
            pass
        await events.aclose()

        assert [m.role for m in ledger.messages] == ["system", "user"]

        answer = await orch.start("Again?", ledger=ledger).run()
        assert answer == "Fine."
        assert [m["role"] for m in model.requests[1]["messages"]] == [
            "system", "user", "user",
        ]


# ---------------------------------------------------------------------------
# Ledger continuation and editing
# ---------------------------------------------------------------------------

class TestEditAndResubmit:
    async def test_continue_on_same_ledger(self):
        model = _Model(_turn("First answer."), _turn("Second answer."))
        orch = _orchestrator(model)
        ledger = ContextLedger()

        await orch.start("q1", ledger=ledger).run()
        await orch.start("q2", ledger=ledger).run()

        assert [m.content for m in ledger.messages[1:]] == [
            "q1", "First answer.", "q2", "Second answer.",
        ]
        assert sum(m.role == "system" for m in ledger.messages) == 1

    async def test_edit_truncates_before_kth_user_message(self):
        model = _Model(
            _turn(calls=[("c1", "get_weather", '{"city": "Paris"}')]),
            _turn("Paris is sunny."),
            _turn("Rome is rainy."),
            _turn("Oslo is cold."),
        )
        orch = _orchestrator(model, _Tools(True))
        ledger = ContextLedger()
        await orch.start("Paris?", ledger=ledger).run()
        await orch.start("Rome?", ledger=ledger).run()
        assert len(ledger) == 7

        exchange = orch.edit(ledger, 0, "Oslo?")
        assert exchange.ledger is ledger
        assert [(m.role, m.content) for m in ledger.messages] == [
            ("system", "You are a test assistant."), ("user", "Oslo?"),
        ]
        assert await exchange.run() == "Oslo is cold."
        assert [m["role"] for m in model.requests[-1]["messages"]] == ["system", "user"]

    async def test_edit_unknown_index(self):
        orch = _orchestrator(_Model(_turn("x")))
        ledger = ContextLedger()
        await orch.start("q", ledger=ledger).run()
        with pytest.raises(IndexError):
            orch.edit(ledger, 3, "nope")

    async def test_restore_from_snapshot(self):
        model = _Model(_turn("Before."), _turn("After."))
        orch = _orchestrator(model)
        first = orch.start("q1")
        await first.run()

        restored = ContextLedger.restore(first.ledger.snapshot())
        await orch.start("q2", ledger=restored).run()
        assert [m["role"] for m in model.requests[-1]["messages"]] == [
            "system", "user", "assistant", "user",
        ]


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------

class TestPromptContext:
    async def test_context_filters_tools_and_shapes_prompt(self):
        model = _Model(_turn("ok"))
        orch = _orchestrator(model)
        orch.catalog = default_catalog()
        ctx = PromptContext(share_page_content=True, language="zh-CN")

        await orch.start("Summarize this page", context=ctx, quote="key line").run()

        request = model.requests[0]
        assert [t["function"]["name"] for t in request["tools"]] == ["extract_page_content"]
        assert request["tool_choice"] == "auto"
        assert "Simplified Chinese" in request["messages"][0]["content"]
        assert request["messages"][1]["content"].startswith('[Quote: "key line"]')

    async def test_no_tools_sent_when_none_available(self):
        model = _Model(_turn("ok"))
        orch = _orchestrator(model)
        orch.catalog = default_catalog()
        await orch.start("hi").run()
        assert "tools" not in model.requests[0]

    async def test_localized_status_text(self):
        model = _Model(
            _turn(calls=[("c", "get_weather", "{}")]),
            _turn("ok"),
        )
        exchange = _orchestrator(model, _Tools(True)).start(
            "hi", context=PromptContext(language="zh-CN"),
        )
        events = await _events(exchange)
        thinking = [e.text for e in events if e.type == EventType.THINKING]
        assert thinking == ["正在执行 get_weather..."]
