import asyncio

import pytest
from pydantic import BaseModel, TypeAdapter

from agent_eval.core.errors import ProtocolExhaustedError
from agent_eval.engine.model import ToolCall
from agent_eval.protocol import (
    REPORT_PROGRESS_TOOL,
    SUBMIT_RESULT_TOOL,
    TOOL_CALLING_PROTOCOL,
    CompleteEvent,
    ProgressEvent,
    ProgressivePattern,
    parse_tool_payload,
    step_count_is,
)
from agent_eval.testing import ScriptedToolModel, progress, submit


class Step(BaseModel):
    note: str


class Answer(BaseModel):
    value: int


class Item(BaseModel):
    name: str


class Basket(BaseModel):
    items: list[Item]


@pytest.fixture
def pattern():
    return ProgressivePattern(Step, Answer)


@pytest.mark.asyncio
async def test_progress_events_then_one_complete_in_order(pattern):
    model = ScriptedToolModel(
        [
            progress({"note": "reading"}),
            progress({"note": "thinking"}),
            submit({"value": 42}),
        ]
    )

    events = []
    async with pattern.run(model, prompt="What is the answer?") as run:
        async for event in run:
            events.append(event)

    assert [e.type for e in events] == ["progress", "progress", "complete"]
    assert [e.data.note for e in events[:2]] == ["reading", "thinking"]
    complete = events[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.data == Answer(value=42)
    assert complete.summary.steps == 3
    assert complete.summary.progress_events == 2
    assert complete.summary.token_usage.total_tokens == 90


@pytest.mark.asyncio
async def test_request_carries_both_tools_and_protocol_prompt(pattern):
    model = ScriptedToolModel([submit({"value": 1})])

    await pattern.execute(model, prompt="Go", system="You are a calculator.")

    request = model.requests[0]
    assert request.prompt == "Go"
    assert request.tool_choice == "required"
    assert request.system == f"You are a calculator.\n\n{TOOL_CALLING_PROTOCOL}"
    assert [tool.name for tool in request.tools] == [
        REPORT_PROGRESS_TOOL,
        SUBMIT_RESULT_TOOL,
    ]
    assert request.tools[1].parameters["required"] == ["data"]


@pytest.mark.asyncio
async def test_custom_protocol_text_replaces_default(pattern):
    model = ScriptedToolModel([submit({"value": 1})])

    await pattern.execute(model, prompt="Go", protocol="Call submitResult once.")

    assert model.requests[0].system == "Call submitResult once."


@pytest.mark.asyncio
async def test_no_submit_raises_protocol_exhausted(pattern):
    model = ScriptedToolModel([progress({"note": "only progress"})])

    with pytest.raises(ProtocolExhaustedError, match="did not call the submitResult tool"):
        await pattern.execute(model, prompt="Go")


@pytest.mark.asyncio
async def test_invalid_result_reports_last_parse_error(pattern):
    model = ScriptedToolModel([submit({"value": "not a number"})])

    with pytest.raises(ProtocolExhaustedError, match="Last parse error") as exc:
        await pattern.execute(model, prompt="Go")
    assert "value" in exc.value.last_parse_error


@pytest.mark.asyncio
async def test_invalid_progress_is_dropped(pattern):
    model = ScriptedToolModel(
        [
            [progress({"wrong": True}), progress({"note": "ok"})],
            submit({"value": 3}),
        ]
    )

    outcome = await pattern.execute(model, prompt="Go")

    assert [event.data.note for event in outcome.progress] == ["ok"]
    assert outcome.complete.summary.progress_events == 1
    assert outcome.data.value == 3


@pytest.mark.asyncio
async def test_last_valid_submit_in_a_step_wins(pattern):
    model = ScriptedToolModel(
        [[submit({"value": 1}), submit({"value": "bad"}), submit({"value": 2})]]
    )

    outcome = await pattern.execute(model, prompt="Go")

    assert outcome.data.value == 2


@pytest.mark.asyncio
async def test_string_payload_is_decoded_as_json(pattern):
    model = ScriptedToolModel(
        [ToolCall(name=SUBMIT_RESULT_TOOL, args={"data": '{"value": 9}'})]
    )

    outcome = await pattern.execute(model, prompt="Go")

    assert outcome.data.value == 9


@pytest.mark.asyncio
async def test_stream_closes_after_submit(pattern):
    model = ScriptedToolModel(
        [submit({"value": 1}), progress({"note": "never seen"})]
    )

    outcome = await pattern.execute(model, prompt="Go")

    assert outcome.progress == []
    assert model.steps_pulled == 1
    assert model.closed_streams == 1


@pytest.mark.asyncio
async def test_extra_stop_condition_ends_run_early(pattern):
    model = ScriptedToolModel(
        [progress({"note": "one"}), progress({"note": "two"}), submit({"value": 1})]
    )

    events = []
    with pytest.raises(ProtocolExhaustedError):
        async with pattern.run(model, prompt="Go", stop_when=step_count_is(1)) as run:
            async for event in run:
                events.append(event)

    assert len(events) == 1
    assert model.steps_pulled == 1


@pytest.mark.asyncio
async def test_producer_waits_for_consumer(pattern):
    model = ScriptedToolModel(
        [progress({"note": "a"}), progress({"note": "b"}), submit({"value": 1})]
    )

    async with pattern.run(model, prompt="Go") as run:
        first = await anext(run)
        await asyncio.sleep(0.05)
        assert first.data.note == "a"
        assert model.steps_pulled == 1

        second = await anext(run)
        assert second.data.note == "b"


@pytest.mark.asyncio
async def test_leaving_early_closes_model_stream(pattern):
    model = ScriptedToolModel(
        [progress({"note": "a"}), progress({"note": "b"}), submit({"value": 1})]
    )

    async with pattern.run(model, prompt="Go") as run:
        async for event in run:
            assert isinstance(event, ProgressEvent)
            break

    assert run.closed
    assert model.closed_streams == 1
    assert model.steps_pulled == 1
    with pytest.raises(StopAsyncIteration):
        await anext(run)


@pytest.mark.asyncio
async def test_bare_iteration_is_released_by_aclose(pattern):
    model = ScriptedToolModel(
        [progress({"note": "a"}), progress({"note": "b"}), submit({"value": 1})]
    )

    run = pattern.run(model, prompt="Go")
    async for _ in run:
        break
    await run.aclose()

    assert run.closed
    assert model.closed_streams == 1


@pytest.mark.asyncio
async def test_abandoned_run_cancels_its_producer(pattern):
    model = ScriptedToolModel(
        [progress({"note": "a"}), progress({"note": "b"}), submit({"value": 1})]
    )

    run = pattern.run(model, prompt="Go")
    async for _ in run:
        break
    producer = run._producer
    del run

    await asyncio.wait([producer], timeout=1)

    assert producer.cancelled()
    assert model.closed_streams == 1
    assert model.steps_pulled == 1


@pytest.mark.asyncio
async def test_model_failure_surfaces_to_consumer(pattern):
    model = ScriptedToolModel([progress({"note": "a"}), RuntimeError("stream broke")])

    events = []
    with pytest.raises(RuntimeError, match="stream broke"):
        async with pattern.run(model, prompt="Go") as run:
            async for event in run:
                events.append(event)

    assert len(events) == 1


@pytest.mark.asyncio
async def test_concurrent_runs_share_one_pattern(pattern):
    first = ScriptedToolModel([progress({"note": "x"}), submit({"value": 1})])
    second = ScriptedToolModel([submit({"value": 2})])

    a, b = await asyncio.gather(
        pattern.execute(first, prompt="a"), pattern.execute(second, prompt="b")
    )

    assert (a.data.value, len(a.progress)) == (1, 1)
    assert (b.data.value, len(b.progress)) == (2, 0)


def test_nested_definitions_are_hoisted_to_the_root():
    tools = ProgressivePattern(Item, Basket).tools()
    parameters = tools[1].parameters

    assert "Item" in parameters["$defs"]
    assert "$defs" not in parameters["properties"]["data"]


@pytest.mark.parametrize(
    ("args", "error"),
    [
        ("oops", "must be an object"),
        ({"value": 1}, "missing the 'data' field"),
        ({"data": "{not json"}, "Invalid JSON"),
    ],
)
def test_parse_tool_payload_errors(args, error):
    outcome = parse_tool_payload(args, TypeAdapter(Answer))

    assert not outcome.ok
    assert error in outcome.error


def test_parse_tool_payload_accepts_plain_types():
    outcome = parse_tool_payload({"data": ["a", "b"]}, TypeAdapter(list[str]))
    assert outcome.value == ["a", "b"]


def test_tool_names_are_camel_case():
    assert (REPORT_PROGRESS_TOOL, SUBMIT_RESULT_TOOL) == ("reportProgress", "submitResult")
    assert "You MUST call submitResult exactly once" in TOOL_CALLING_PROTOCOL
