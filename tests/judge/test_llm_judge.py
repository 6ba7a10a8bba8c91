import pytest
from pydantic import BaseModel

from agent_eval.core.errors import (
    ConfigurationError,
    ModelCallError,
    VerdictIncompleteError,
)
from agent_eval.core.types import Criterion, EvalContext, JudgeResult, Verdict
from agent_eval.judge import (
    DEFAULT_JUDGE_PROMPT,
    LLMJudge,
    run_validator,
    accuracy,
    calculate_overall_score,
    consistency,
    relevance,
    schema,
)
from agent_eval.testing import ScriptedModel


class Order(BaseModel):
    id: int
    item: str


CONTEXT = EvalContext(
    input={"question": "2+2"},
    output={"id": 1, "item": "tea"},
    agent_description="Order bot",
)


def verdict(criterion_id, score, passed=None, reasoning="ok"):
    item = {"criterionId": criterion_id, "score": score, "reasoning": reasoning}
    if passed is not None:
        item["passed"] = passed
    return item


@pytest.mark.asyncio
async def test_validator_only_judge_makes_no_model_call():
    model = ScriptedModel()
    judge = LLMJudge(model, [schema(Order)])

    result = await judge.evaluate(CONTEXT)

    assert model.call_count == 0
    assert result.overall_score == 100
    assert result.passed
    assert result.metadata is None
    assert result.verdicts[0].reasoning == "Schema Validation passed"


@pytest.mark.asyncio
async def test_validator_only_judge_needs_no_model():
    judge = LLMJudge(None, [schema(Order)])

    result = await judge.evaluate(EvalContext(input=None, output={"id": "x"}))

    assert result.overall_score == 0
    assert not result.passed
    assert result.verdicts[0].reasoning.startswith("Schema Validation failed:\n- ")


@pytest.mark.asyncio
async def test_weighted_overall_score():
    model = ScriptedModel(
        {"verdicts": [verdict("accuracy", 100), verdict("relevance", 50)]}
    )
    judge = LLMJudge(model, [accuracy(weight=2), relevance(weight=1)])

    result = await judge.evaluate(CONTEXT)

    assert result.overall_score == 83.33
    assert result.passed
    assert [v.passed for v in result.verdicts] == [True, False]
    assert result.metadata.token_usage.total_tokens == 30
    assert result.metadata.model == "scripted-model"


@pytest.mark.asyncio
async def test_missing_verdict_raises():
    model = ScriptedModel({"verdicts": [verdict("accuracy", 90)]})
    judge = LLMJudge(model, [accuracy(), consistency()])

    with pytest.raises(VerdictIncompleteError) as exc:
        await judge.evaluate(CONTEXT)

    assert exc.value.missing_ids == ["consistency"]
    assert exc.value.provided_ids == ["accuracy"]


@pytest.mark.asyncio
async def test_score_equal_to_threshold_passes():
    model = ScriptedModel({"verdicts": [verdict("accuracy", 70)]})

    result = await LLMJudge(model, [accuracy()], pass_threshold=70).evaluate(CONTEXT)

    assert result.overall_score == 70
    assert result.passed
    assert result.verdicts[0].passed


@pytest.mark.asyncio
async def test_zero_total_weight_scores_zero():
    model = ScriptedModel({"verdicts": [verdict("accuracy", 95)]})

    result = await LLMJudge(model, [accuracy(weight=0)]).evaluate(CONTEXT)

    assert result.overall_score == 0
    assert not result.passed


@pytest.mark.asyncio
async def test_model_supplied_passed_flag_is_kept():
    model = ScriptedModel({"verdicts": [verdict("accuracy", 95, passed=False)]})

    result = await LLMJudge(model, [accuracy()]).evaluate(CONTEXT)

    assert result.verdicts[0].passed is False
    assert result.passed


@pytest.mark.asyncio
async def test_hybrid_prompt_lists_only_model_criteria():
    model = ScriptedModel({"verdicts": [verdict("relevance", 80)]})
    judge = LLMJudge(model, [schema(Order), relevance()])

    result = await judge.evaluate(CONTEXT)

    prompt = model.prompts[0]
    assert "(id: relevance" in prompt
    assert "schema-validation" not in prompt
    assert "Order bot" in prompt
    assert '"item": "tea"' in prompt
    assert model.systems[0] == DEFAULT_JUDGE_PROMPT.system
    assert [v.criterion_id for v in result.verdicts] == ["schema-validation", "relevance"]
    assert result.overall_score == 90


@pytest.mark.asyncio
async def test_verdicts_follow_criteria_order_and_extras_are_dropped():
    model = ScriptedModel(
        {
            "verdicts": [
                verdict("relevance", 60),
                verdict("bonus", 100),
                verdict("accuracy", 80, reasoning="first"),
                verdict("accuracy", 10, reasoning="second"),
            ]
        }
    )

    result = await LLMJudge(model, [accuracy(), relevance()]).evaluate(CONTEXT)

    assert [v.criterion_id for v in result.verdicts] == ["accuracy", "relevance"]
    assert result.verdicts[0].reasoning == "first"
    assert result.overall_score == 70


@pytest.mark.asyncio
async def test_model_failure_becomes_model_call_error():
    model = ScriptedModel(RuntimeError("rate limited"))

    with pytest.raises(ModelCallError, match="rate limited") as exc:
        await LLMJudge(model, [accuracy()]).evaluate(CONTEXT)

    assert exc.value.context["prompt_id"] == "default-judge"
    assert exc.value.context["prompt_version"] == "2.0.0"


@pytest.mark.asyncio
async def test_malformed_response_becomes_model_call_error():
    model = ScriptedModel({"verdicts": [{"criterionId": "accuracy", "score": 150}]})

    with pytest.raises(ModelCallError):
        await LLMJudge(model, [accuracy()]).evaluate(CONTEXT)


def test_duplicate_criterion_ids_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate criterion ids: accuracy"):
        LLMJudge(ScriptedModel(), [accuracy(), accuracy(weight=2)])


def test_model_criteria_require_a_model():
    with pytest.raises(ConfigurationError):
        LLMJudge(None, [accuracy()])


def test_calculate_overall_score_defaults_missing_weights_to_one():
    verdicts = [
        Verdict(criterion_id="a", score=90, reasoning="", passed=True),
        Verdict(criterion_id="b", score=60, reasoning="", passed=False),
    ]

    assert calculate_overall_score(verdicts, {"a": 1.0}) == 75
    assert calculate_overall_score([], {}) == 0


def test_custom_criterion_weight_must_be_non_negative():
    with pytest.raises(ValueError):
        Criterion(id="x", name="X", description="x", weight=-1)


def exploding_validator(output):
    raise TypeError("boom")


@pytest.mark.asyncio
async def test_raising_validator_becomes_failed_verdict():
    crashing = Criterion(
        id="format",
        name="Format",
        description="Custom format check",
        validator=exploding_validator,
    )
    judge = LLMJudge(None, [crashing, schema(Order)])

    result = await judge.evaluate(CONTEXT)

    assert result.verdicts[0] == Verdict(
        criterion_id="format",
        score=0,
        reasoning="Format failed:\nValidator raised TypeError: boom",
        passed=False,
    )
    assert result.verdicts[1].passed
    assert result.overall_score == 50
    assert not result.passed


def test_run_validator_requires_a_validator():
    with pytest.raises(ConfigurationError, match="has no validator"):
        run_validator(accuracy(), {"id": 1})


def test_threshold_override_rederives_passed():
    verdicts = [Verdict(criterion_id="x", score=80, reasoning="ok", passed=True)]
    graded = JudgeResult(verdicts=verdicts, overall_score=80, passed=True)

    assert graded.with_pass_threshold(None) is graded
    assert not graded.with_pass_threshold(95).passed
    assert graded.with_pass_threshold(80).passed


@pytest.mark.asyncio
async def test_model_grading_without_model_raises_configuration_error():
    judge = LLMJudge(None, [schema(Order)])
    judge.model_criteria = [accuracy()]

    with pytest.raises(ConfigurationError, match="A model is required"):
        await judge.evaluate(CONTEXT)
