import asyncio
import json

import pytest

from spindle_service.core.errors import ToolExecutionError
from spindle_service.core.types import ReasoningChunk, StreamEvent, TextChunk
from spindle_service.protocol.orchestration.messages import AGENT_STEP, TurnState, user_message
from spindle_service.protocol.orchestration.pipeline import ToolStreamProcessor
from spindle_service.tools.base import BaseTool, ToolContext


class RecordTool(BaseTool):
    """Append a label to agent_state['log']."""

    async def run(self, ctx: ToolContext, label: str, delay: float = 0.0) -> dict:
        await asyncio.sleep(delay)
        ctx.state.agent_state.setdefault("log", []).append(label)
        return {"label": label}


class FailTool(BaseTool):
    async def run(self, ctx: ToolContext, message: str = "boom") -> dict:
        raise ToolExecutionError(message)


class CostTool(BaseTool):
    async def run(self, ctx: ToolContext, credits: int) -> dict:
        ctx.add_credits(credits)
        return {"charged": credits}


TOOLS = {"record": RecordTool(), "fail": FailTool(), "cost": CostTool()}


def call(name, **args):
    return "<tool_call>" + json.dumps({"cb_tool_name": name, **args}) + "</tool_call>"


def of_type(events, etype):
    return [ev for ev in events if ev["type"] == etype]


@pytest.mark.asyncio
async def test_effects_follow_queue_order_not_completion_order(make_stream):
    proc = ToolStreamProcessor(
        make_stream(call("record", label="A", delay=0.05), call("record", label="B")),
        state=TurnState(),
        tools=TOOLS,
    )
    events, result = await proc.collect()

    assert result.state.agent_state["log"] == ["A", "B"]
    assert [ev["data"]["output"]["label"] for ev in of_type(events, StreamEvent.TOOL_RESULT)] == ["A", "B"]
    assert [m["result"]["label"] for m in result.tool_results] == ["A", "B"]
    for res in of_type(events, StreamEvent.TOOL_RESULT):
        call_idx = next(
            i for i, ev in enumerate(events)
            if ev["type"] == StreamEvent.TOOL_CALL and ev["data"]["tool_call_id"] == res["data"]["tool_call_id"]
        )
        assert call_idx < events.index(res)


@pytest.mark.asyncio
async def test_custom_tag_example_through_pipeline(make_stream):
    proc = ToolStreamProcessor(
        make_stream('Before <tag>{"tool":"x","a":1}</tag> After'),
        state=TurnState(),
        start_tag="<tag>",
        end_tag="</tag>",
        tool_name_key="tool",
    )
    events, result = await proc.collect()
    visible = [ev for ev in events if ev["type"] != StreamEvent.TOOL_RESULT]
    assert [ev["type"] for ev in visible] == [StreamEvent.TEXT, StreamEvent.TOOL_CALL, StreamEvent.TEXT]
    assert visible[0]["data"]["delta"] == "Before "
    assert visible[1]["data"]["tool_name"] == "x"
    assert visible[1]["data"]["input"] == {"a": 1}
    assert visible[2]["data"]["delta"] == " After"
    # "x" is not declared anywhere
    (res,) = of_type(events, StreamEvent.TOOL_RESULT)
    assert res["data"]["error"] == "Tool 'x' not found"


@pytest.mark.asyncio
async def test_state_accretion_and_agent_step_expiry(make_stream):
    state = TurnState(messages=[user_message("hi"), user_message("scratch", ttl=AGENT_STEP)])
    proc = ToolStreamProcessor(
        make_stream("Hel", "lo ", call("record", label="A"), " bye"),
        state=state,
        tools=TOOLS,
    )
    _, result = await proc.collect()

    msgs = result.state.messages
    assert msgs[0] == {"role": "user", "content": "hi"}
    assert msgs[1] == {"role": "assistant", "content": "Hello "}
    assert msgs[2]["role"] == "assistant" and msgs[2]["tool"] == "record"
    assert msgs[2]["args"] == {"label": "A"}
    assert msgs[3] == {"role": "assistant", "content": " bye"}
    assert msgs[4]["role"] == "tool" and msgs[4]["result"] == {"label": "A"}
    assert len(msgs) == 5
    # the caller's state is untouched
    assert len(state.messages) == 2
    assert "log" not in state.agent_state


@pytest.mark.asyncio
async def test_execution_error_is_isolated(make_stream):
    proc = ToolStreamProcessor(
        make_stream(call("fail"), call("record", label="B")),
        state=TurnState(),
        tools=TOOLS,
    )
    events, result = await proc.collect()
    failed, ok = of_type(events, StreamEvent.TOOL_RESULT)
    assert failed["data"]["error"] == "boom"
    assert failed["data"]["output"] == {"errorMessage": "boom"}
    assert ok["data"]["output"] == {"label": "B"}
    assert result.state.agent_state["log"] == ["B"]


@pytest.mark.asyncio
async def test_tool_timeout_becomes_error_result(make_stream):
    proc = ToolStreamProcessor(
        make_stream(call("record", label="slow", delay=1.0)),
        state=TurnState(),
        tools=TOOLS,
        tool_timeout=0.01,
    )
    events, _ = await proc.collect()
    (res,) = of_type(events, StreamEvent.TOOL_RESULT)
    assert "timed out" in res["data"]["error"]


@pytest.mark.asyncio
async def test_parse_error_message_lands_in_temporal_order(make_stream):
    proc = ToolStreamProcessor(
        make_stream(call("record", label="A", delay=0.03), "<tool_call>{oops</tool_call>", call("record", label="B")),
        state=TurnState(),
        tools=TOOLS,
    )
    events, result = await proc.collect()
    (err,) = of_type(events, StreamEvent.ERROR)
    assert err["data"]["kind"] == "parse_error"

    tool_msgs = [m for m in result.state.messages if m["role"] == "tool"]
    assert [m["tool"] for m in tool_msgs] == ["record", "parse_error", "record"]
    assert tool_msgs[1]["result"]["errorMessage"].startswith("Invalid JSON: ")
    assert [m["tool"] for m in result.tool_results] == ["record", "parse_error", "record"]
    assert result.state.agent_state["log"] == ["A", "B"]


@pytest.mark.asyncio
async def test_report_cost_awaited_once_per_job(make_stream):
    costs = []

    async def report(credits):
        costs.append(credits)

    proc = ToolStreamProcessor(
        make_stream(call("cost", credits=5), call("record", label="A")),
        state=TurnState(),
        tools=TOOLS,
        report_cost=report,
    )
    _, result = await proc.collect()
    assert costs == [5, 0]
    assert result.credits == 5


@pytest.mark.asyncio
async def test_failing_cost_report_does_not_break_turn(make_stream):
    async def report(credits):
        raise RuntimeError("billing down")

    proc = ToolStreamProcessor(
        make_stream(call("record", label="A")),
        state=TurnState(),
        tools=TOOLS,
        report_cost=report,
    )
    events, result = await proc.collect()
    assert len(of_type(events, StreamEvent.TOOL_RESULT)) == 1
    assert result.state.agent_state["log"] == ["A"]


@pytest.mark.asyncio
async def test_custom_tool_goes_to_session_handler(make_stream):
    async def handler(name, args):
        return {"handled": name, **args}

    proc = ToolStreamProcessor(
        make_stream(call("lookup", q="x"), call("schemaless")),
        state=TurnState(),
        tools=TOOLS,
        custom_tools={"lookup": {"type": "object"}, "schemaless": None},
        custom_tool_handler=handler,
    )
    events, _ = await proc.collect()
    first, second = of_type(events, StreamEvent.TOOL_RESULT)
    assert first["data"]["output"] == {"handled": "lookup", "q": "x"}
    assert second["data"]["output"] == {"handled": "schemaless"}


@pytest.mark.asyncio
async def test_custom_tool_without_handler(make_stream):
    proc = ToolStreamProcessor(
        make_stream(call("lookup")),
        state=TurnState(),
        custom_tools={"lookup": None},
    )
    events, _ = await proc.collect()
    (res,) = of_type(events, StreamEvent.TOOL_RESULT)
    assert "No handler" in res["data"]["error"]


@pytest.mark.asyncio
async def test_abort_stops_dispatch_and_drains_queued_work(make_stream):
    stream = make_stream(call("record", label="A"), call("record", label="B"))
    abort = asyncio.Event()
    proc = ToolStreamProcessor(stream, state=TurnState(), tools=TOOLS, abort_signal=abort)

    events = []
    async for ev in proc:
        events.append(ev)
        if ev["type"] == StreamEvent.TOOL_CALL:
            abort.set()

    result = proc.result
    assert [ev["type"] for ev in events] == [StreamEvent.TOOL_CALL]
    assert result.aborted
    assert stream.closed
    assert stream.consumed == 1
    # queued job A still ran; B was never dispatched
    assert result.state.agent_state["log"] == ["A"]
    assert [c["input"]["label"] for c in result.tool_calls] == ["A"]
    assert len(result.tool_results) == 1


@pytest.mark.asyncio
async def test_result_carries_response_and_message_id(make_stream):
    proc = ToolStreamProcessor(
        make_stream("one ", call("record", label="A", cb_easp=True), message_id="msg-7"),
        state=TurnState(),
        tools=TOOLS,
    )
    _, result = await proc.collect()
    assert result.message_id == "msg-7"
    assert result.full_response == "one " + call("record", label="A", cb_easp=True)
    assert result.ends_agent_step
    assert not result.aborted
    assert result.tool_calls[0]["input"] == {"label": "A"}


@pytest.mark.asyncio
async def test_salvaged_call_runs_and_ends_step(make_stream):
    proc = ToolStreamProcessor(
        make_stream('<tool_call>{"cb_tool_name":"record","label":"Z'),
        state=TurnState(),
        tools=TOOLS,
    )
    events, result = await proc.collect()
    (tc,) = of_type(events, StreamEvent.TOOL_CALL)
    assert tc["data"]["autocompleted"] is True
    assert result.state.agent_state["log"] == ["Z"]
    assert result.full_response.endswith('"}</tool_call>')
    assert result.ends_agent_step


@pytest.mark.asyncio
async def test_reasoning_carries_run_ids(make_stream):
    state = TurnState(ancestor_run_ids=["run-root"])
    proc = ToolStreamProcessor(make_stream(ReasoningChunk("hmm")), state=state)
    events, _ = await proc.collect()
    (ev,) = events
    assert ev["type"] == StreamEvent.REASONING_DELTA
    assert ev["data"] == {"delta": "hmm", "run_id": state.run_id, "ancestor_run_ids": ["run-root"]}


@pytest.mark.asyncio
async def test_processor_is_single_use(make_stream):
    proc = ToolStreamProcessor(make_stream("x"), state=TurnState())
    await proc.collect()
    with pytest.raises(RuntimeError):
        proc.__aiter__()


@pytest.mark.asyncio
async def test_closing_early_lets_running_tool_finish(make_stream):
    stream = make_stream(call("record", label="A", delay=0.05), call("record", label="B"))
    abort = asyncio.Event()
    proc = ToolStreamProcessor(stream, state=TurnState(), tools=TOOLS, abort_signal=abort)

    gen = proc.__aiter__()
    async for ev in gen:
        if ev["type"] == StreamEvent.TOOL_CALL:
            break
    await gen.aclose()

    assert abort.is_set()
    assert stream.closed
    assert proc.result.aborted
    assert proc.result.state.agent_state["log"] == ["A"]
    assert [m["result"] for m in proc.result.tool_results] == [{"label": "A"}]
    assert [c["input"]["label"] for c in proc.result.tool_calls] == ["A"]


async def abort_before(chunks, abort, index):
    for i, chunk in enumerate(chunks):
        if i == index:
            abort.set()
        yield chunk


@pytest.mark.asyncio
async def test_undispatched_call_does_not_end_the_step():
    abort = asyncio.Event()
    chunks = [TextChunk(call("record", label="A")), TextChunk(call("record", label="B", cb_easp=True))]
    proc = ToolStreamProcessor(abort_before(chunks, abort, 1), state=TurnState(), tools=TOOLS, abort_signal=abort)
    _, result = await proc.collect()

    assert [c["input"]["label"] for c in result.tool_calls] == ["A"]
    assert result.aborted
    assert not result.ends_agent_step


@pytest.mark.asyncio
async def test_autocompleted_flag_is_per_call(make_stream):
    proc = ToolStreamProcessor(
        make_stream(call("record", label="A"), '<tool_call>{"cb_tool_name":"record","label":"Z'),
        state=TurnState(),
        tools=TOOLS,
    )
    events, result = await proc.collect()
    assert [c["autocompleted"] for c in result.tool_calls] == [False, True]
    assert [ev["data"]["autocompleted"] for ev in of_type(events, StreamEvent.TOOL_CALL)] == [False, True]


def test_builtin_names_are_registered_up_front(make_stream):
    proc = ToolStreamProcessor(
        make_stream("x"),
        state=TurnState(),
        tools=TOOLS,
        custom_tools={"fail": None},
    )
    registered = proc.demux.registry.processors
    assert set(registered) == {"record", "cost"}
    assert proc.demux.registry.resolve("lookup").kind == "custom"
    assert proc.demux.registry.resolve("fail").kind == "custom"
    assert registered["record"].kind == "built-in"
