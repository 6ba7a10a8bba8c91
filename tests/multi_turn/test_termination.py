import pytest

from agent_eval.core.errors import ConfigurationError, ModelCallError
from agent_eval.core.types import ConversationTurn
from agent_eval.multi_turn import (
    ConversationContext,
    CustomCondition,
    FieldSetCondition,
    FieldValueCondition,
    MaxTurnsCondition,
    NaturalLanguageCondition,
    TerminationType,
    after_turns,
    all_of,
    any_of,
    check_condition,
    check_termination,
    field_equals,
    field_is_set,
    negate,
)
from agent_eval.testing import ScriptedModel


def ctx(turn_index=1, latest_output=None, history=None):
    return ConversationContext(
        turn_index=turn_index, latest_output=latest_output, history=history or []
    )


@pytest.mark.asyncio
async def test_max_turns():
    condition = MaxTurnsCondition(count=3)

    assert not (await check_condition(condition, ctx(2))).terminated
    result = await check_condition(condition, ctx(3))
    assert result.terminated
    assert result.termination_type == TerminationType.MAX_TURNS
    assert result.reason == "Maximum turns reached (3)"


@pytest.mark.asyncio
async def test_field_set_ignores_none_and_missing():
    condition = FieldSetCondition(field_path="order.id")

    assert not (await check_condition(condition, ctx(latest_output={"order": {}}))).terminated
    assert not (
        await check_condition(condition, ctx(latest_output={"order": {"id": None}}))
    ).terminated

    result = await check_condition(condition, ctx(latest_output={"order": {"id": 0}}))
    assert result.terminated
    assert result.reason == 'Field "order.id" is set (value: 0)'


@pytest.mark.asyncio
async def test_field_value_uses_structural_equality():
    condition = FieldValueCondition(field_path="state", expected_value={"done": True})

    met = await check_condition(condition, ctx(latest_output={"state": {"done": True}}))
    assert met.terminated
    assert met.matched_condition == condition

    missing = await check_condition(condition, ctx(latest_output={}))
    assert not missing.terminated
    assert missing.reason.endswith("(got: <missing>)")


@pytest.mark.asyncio
async def test_field_value_does_not_match_numbers_against_booleans():
    condition = FieldValueCondition(field_path="state", expected_value={"done": True})

    numeric = await check_condition(condition, ctx(latest_output={"state": {"done": 1}}))
    assert not numeric.terminated
    assert numeric.reason.endswith('(got: {"done": 1})')

    zero = FieldValueCondition(field_path="count", expected_value=0)
    assert not (await check_condition(zero, ctx(latest_output={"count": False}))).terminated
    assert (await check_condition(zero, ctx(latest_output={"count": 0.0}))).terminated

    listed = FieldValueCondition(field_path="tags", expected_value=["a", True])
    assert (await check_condition(listed, ctx(latest_output={"tags": ["a", True]}))).terminated
    assert not (await check_condition(listed, ctx(latest_output={"tags": ["a", 1]}))).terminated


@pytest.mark.asyncio
async def test_custom_condition_sync_and_async():
    async def is_late(context):
        return context.turn_index > 2

    sync = CustomCondition(check=lambda c: c.latest_output == "bye", description="said bye")
    late = CustomCondition(check=is_late)

    result = await check_condition(sync, ctx(latest_output="bye"))
    assert result.terminated
    assert result.reason == "said bye met"
    assert result.termination_type == TerminationType.CUSTOM
    assert (await check_condition(late, ctx(3))).terminated
    assert (await check_condition(late, ctx(1))).reason == "Custom condition not met"


@pytest.mark.asyncio
async def test_custom_condition_that_raises_is_not_met():
    def explode(context):
        raise ValueError("boom")

    result = await check_condition(
        CustomCondition(check=explode, description="fragile"), ctx()
    )

    assert not result.terminated
    assert result.reason == "fragile failed: boom"


@pytest.mark.asyncio
async def test_natural_language_condition_asks_the_model():
    model = ScriptedModel("Yes.")
    condition = NaturalLanguageCondition(description="The user said goodbye")
    history = [ConversationTurn(turn_index=1, input="bye", output={"reply": "see you"})]

    result = await check_condition(
        condition, ctx(1, {"reply": "see you"}, history), model=model
    )

    assert result.terminated
    assert result.termination_type == TerminationType.NATURAL_LANGUAGE
    prompt = model.prompts[0]
    assert "The user said goodbye" in prompt
    assert "Turn 1:" in prompt
    assert '"reply": "see you"' in prompt
    assert 'Respond with ONLY "yes" or "no"' in model.systems[0]


@pytest.mark.asyncio
async def test_natural_language_condition_custom_system_prompt():
    model = ScriptedModel("no")
    condition = NaturalLanguageCondition(
        description="Resolved", system_prompt="Answer yes or no."
    )

    result = await check_condition(condition, ctx(), model=model)

    assert not result.terminated
    assert model.systems == ["Answer yes or no."]
    assert "(No history yet)" in model.prompts[0]


@pytest.mark.asyncio
async def test_natural_language_condition_needs_a_model():
    with pytest.raises(ConfigurationError):
        await check_condition(NaturalLanguageCondition(description="Done"), ctx())


@pytest.mark.asyncio
async def test_natural_language_model_failure_is_wrapped():
    model = ScriptedModel(RuntimeError("quota"))

    with pytest.raises(ModelCallError, match="quota"):
        await check_condition(
            NaturalLanguageCondition(description="Done"), ctx(), model=model
        )


@pytest.mark.asyncio
async def test_check_termination_first_satisfied_wins():
    conditions = [
        FieldValueCondition(field_path="status", expected_value="done"),
        MaxTurnsCondition(count=2),
    ]

    result = await check_termination(conditions, ctx(2, {"status": "done"}))
    assert result.termination_type == TerminationType.FIELD_VALUE

    result = await check_termination(conditions, ctx(2, {"status": "open"}))
    assert result.termination_type == TerminationType.MAX_TURNS

    result = await check_termination(conditions, ctx(1, {"status": "open"}))
    assert not result.terminated
    assert result.reason == "No termination conditions met"


@pytest.mark.asyncio
async def test_check_termination_without_conditions():
    result = await check_termination([], ctx())

    assert not result.terminated
    assert result.reason == "No termination conditions specified"


@pytest.mark.asyncio
async def test_composites():
    done = field_equals("status", "done")
    has_ref = field_is_set("ref")
    output = {"status": "done", "ref": None}

    assert (await check_condition(any_of(done, has_ref), ctx(1, output))).terminated
    assert not (await check_condition(all_of(done, has_ref), ctx(1, output))).terminated
    assert (await check_condition(negate(has_ref), ctx(1, output))).terminated
    assert (await check_condition(after_turns(2), ctx(2))).terminated
    assert not (await check_condition(all_of(), ctx(5))).terminated
    assert not (await check_condition(any_of(), ctx(5))).terminated


def test_composite_descriptions():
    condition = all_of(MaxTurnsCondition(count=2), field_is_set("ref"))
    assert condition.description == "all_of(maxTurns(2), field_is_set(ref))"
