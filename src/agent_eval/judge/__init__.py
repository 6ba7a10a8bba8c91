from .criteria import accuracy, consistency, relevance, schema, step_by_step
from .llm_judge import (
    JudgeResponse,
    LLMJudge,
    ModelVerdict,
    calculate_overall_score,
    run_validator,
)
from .prompts import DEFAULT_JUDGE_PROMPT, JudgePrompt

__all__ = [
    "DEFAULT_JUDGE_PROMPT",
    "JudgePrompt",
    "JudgeResponse",
    "LLMJudge",
    "ModelVerdict",
    "accuracy",
    "calculate_overall_score",
    "consistency",
    "relevance",
    "run_validator",
    "schema",
    "step_by_step",
]
