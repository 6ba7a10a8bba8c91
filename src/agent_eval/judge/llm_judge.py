import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_eval.core.errors import (
    ConfigurationError,
    EvalError,
    ModelCallError,
    VerdictIncompleteError,
)
from agent_eval.core.types import (
    DEFAULT_PASS_THRESHOLD,
    SCORE_MAX,
    SCORE_MIN,
    Criterion,
    EvalContext,
    JudgeMetadata,
    JudgeResult,
    TokenUsage,
    Verdict,
)
from agent_eval.engine.model import Generation, StructuredModel
from agent_eval.engine.prompt import PromptEngine
from agent_eval.judge.prompts import DEFAULT_JUDGE_PROMPT, JudgePrompt

logger = logging.getLogger(__name__)


class ModelVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    criterion_id: str = Field(alias="criterionId")
    score: float = Field(ge=SCORE_MIN, le=SCORE_MAX)
    reasoning: str
    passed: bool | None = None


class JudgeResponse(BaseModel):
    """Structured output the judge model must produce."""

    verdicts: list[ModelVerdict]


def calculate_overall_score(
    verdicts: Sequence[Verdict], weights: Mapping[str, float]
) -> float:
    """Weighted mean of verdict scores, rounded to 2 places; 0 if weights sum to 0."""
    total_weight = 0.0
    weighted_sum = 0.0
    for verdict in verdicts:
        weight = weights.get(verdict.criterion_id, 1.0)
        weighted_sum += verdict.score * weight
        total_weight += weight

    if total_weight == 0:
        return 0.0
    return round(weighted_sum / total_weight, 2)


def run_validator(criterion: Criterion, output: Any) -> Verdict:
    """Grade ``output`` locally. A validator that raises yields a failed verdict."""
    if criterion.validator is None:
        raise ConfigurationError(
            f"Criterion '{criterion.id}' has no validator",
            context={"criterion_id": criterion.id},
        )
    try:
        result = criterion.validator(output)
    except Exception as e:
        logger.warning("Validator for '%s' raised: %r", criterion.id, e)
        return Verdict(
            criterion_id=criterion.id,
            score=SCORE_MIN,
            reasoning=f"{criterion.name} failed:\nValidator raised {type(e).__name__}: {e}",
            passed=False,
        )
    if result.valid:
        return Verdict(
            criterion_id=criterion.id,
            score=SCORE_MAX,
            reasoning=f"{criterion.name} passed",
            passed=True,
        )
    return Verdict(
        criterion_id=criterion.id,
        score=SCORE_MIN,
        reasoning=f"{criterion.name} failed:\n{result.error_summary or 'Validation error'}",
        passed=False,
    )


class LLMJudge:
    """Hybrid scorer: validator criteria run locally, the rest in one model call."""

    def __init__(
        self,
        model: StructuredModel | None,
        criteria: Sequence[Criterion],
        *,
        prompt: JudgePrompt = DEFAULT_JUDGE_PROMPT,
        pass_threshold: float = DEFAULT_PASS_THRESHOLD,
        model_name: str | None = None,
    ):
        seen: set[str] = set()
        duplicates = []
        for criterion in criteria:
            if criterion.id in seen:
                duplicates.append(criterion.id)
            seen.add(criterion.id)
        if duplicates:
            raise ConfigurationError(
                f"Duplicate criterion ids: {', '.join(duplicates)}",
                context={"duplicate_ids": duplicates},
            )

        self.criteria = list(criteria)
        self.validator_criteria = [c for c in self.criteria if c.is_deterministic]
        self.model_criteria = [c for c in self.criteria if not c.is_deterministic]
        if self.model_criteria and model is None:
            raise ConfigurationError(
                "A model is required to grade criteria without a validator",
                context={"criteria_ids": [c.id for c in self.model_criteria]},
            )

        self.model = model
        self.prompt = prompt
        self.pass_threshold = pass_threshold
        self.model_name = model_name
        self.weights = {c.id: c.weight for c in self.criteria}
        self.prompt_engine = PromptEngine()

    async def evaluate(self, context: EvalContext) -> JudgeResult:
        verdicts = {
            c.id: run_validator(c, context.output) for c in self.validator_criteria
        }

        metadata: JudgeMetadata | None = None
        if self.model_criteria:
            model_verdicts, generation = await self._grade_with_model(context)
            verdicts.update(model_verdicts)
            metadata = JudgeMetadata(
                token_usage=generation.usage or TokenUsage(),
                model=self.model_name or generation.model,
            )

        ordered = [verdicts[c.id] for c in self.criteria]
        overall_score = calculate_overall_score(ordered, self.weights)
        return JudgeResult(
            verdicts=ordered,
            overall_score=overall_score,
            passed=overall_score >= self.pass_threshold,
            metadata=metadata,
        )

    async def _grade_with_model(
        self, context: EvalContext
    ) -> tuple[dict[str, Verdict], Generation]:
        if self.model is None:
            raise ConfigurationError(
                "A model is required to grade criteria without a validator"
            )
        user_prompt = self.prompt.render_user(
            agent_description=context.agent_description,
            input=context.input,
            output=context.output,
            criteria=self.model_criteria,
            engine=self.prompt_engine,
        )

        context_info = {"prompt_id": self.prompt.id, "prompt_version": self.prompt.version}
        try:
            generation = await self.model.generate(
                user_prompt,
                system=self.prompt.system,
                output_schema=JudgeResponse,
            )
            response = self._coerce_response(generation.output)
        except EvalError:
            logger.exception("Judge model call failed")
            raise
        except Exception as e:
            logger.exception("Judge model call failed")
            raise ModelCallError.from_exception(e, **context_info) from e

        requested = [c.id for c in self.model_criteria]
        by_id: dict[str, ModelVerdict] = {}
        for item in response.verdicts:
            if item.criterion_id in by_id:
                logger.warning(
                    "Judge returned more than one verdict for '%s'; keeping the first",
                    item.criterion_id,
                )
                continue
            by_id[item.criterion_id] = item

        missing = [cid for cid in requested if cid not in by_id]
        if missing:
            raise VerdictIncompleteError(missing, list(by_id))

        verdicts = {
            cid: Verdict(
                criterion_id=cid,
                score=by_id[cid].score,
                reasoning=by_id[cid].reasoning,
                passed=(
                    by_id[cid].passed
                    if by_id[cid].passed is not None
                    else by_id[cid].score >= self.pass_threshold
                ),
            )
            for cid in requested
        }
        return verdicts, generation

    @staticmethod
    def _coerce_response(output: Any) -> JudgeResponse:
        if isinstance(output, JudgeResponse):
            return output
        if isinstance(output, str):
            return JudgeResponse.model_validate_json(output)
        if isinstance(output, BaseModel):
            return JudgeResponse.model_validate(output.model_dump(by_alias=True))
        return JudgeResponse.model_validate(output)
