"""agent-eval: testing toolkit for non-deterministic AI agents.

Structured output via a two-tool progress/result protocol, multi-turn
conversations with declarative termination, and hybrid (validator + LLM)
scoring.
"""

__version__ = "0.1.0"

from agent_eval.core.config import EvalSettings, JudgeScope
from agent_eval.core.errors import (
    AgentExecutionError,
    ConfigurationError,
    EvalError,
    EvalErrorCode,
    InputResolutionError,
    ModelCallError,
    PromptRenderError,
    ProtocolExhaustedError,
    VerdictIncompleteError,
)
from agent_eval.core.logging import get_logger, setup_eval_logging
from agent_eval.core.types import (
    AgentMetadata,
    AgentResult,
    ConversationTurn,
    Criterion,
    EvalContext,
    IterationStats,
    JudgeResult,
    MultiTurnIterationStats,
    TokenUsage,
    ValidationResult,
    Verdict,
)
from agent_eval.engine.adk_wrapper import (
    ADKConfig,
    ADKController,
    RetryPolicy,
    model_config,
)
from agent_eval.judge import LLMJudge
from agent_eval.multi_turn import (
    UNBOUNDED,
    AIUser,
    EvaluationResult,
    FollowUpInput,
    MultiTurnRunner,
    MultiTurnTestCase,
)
from agent_eval.protocol import ProgressiveAgent, ProgressivePattern
from agent_eval.suite import EvalReport, EvalSuite, TestCase, TestResult
from agent_eval.testfile import EvalFile

__all__ = [
    "UNBOUNDED",
    "ADKConfig",
    "ADKController",
    "AIUser",
    "AgentExecutionError",
    "AgentMetadata",
    "AgentResult",
    "ConfigurationError",
    "ConversationTurn",
    "Criterion",
    "EvalContext",
    "EvalError",
    "EvalErrorCode",
    "EvalFile",
    "EvalReport",
    "EvalSettings",
    "EvalSuite",
    "EvaluationResult",
    "FollowUpInput",
    "InputResolutionError",
    "IterationStats",
    "JudgeResult",
    "JudgeScope",
    "LLMJudge",
    "ModelCallError",
    "MultiTurnIterationStats",
    "MultiTurnRunner",
    "MultiTurnTestCase",
    "ProgressiveAgent",
    "ProgressivePattern",
    "PromptRenderError",
    "ProtocolExhaustedError",
    "RetryPolicy",
    "TestCase",
    "TestResult",
    "TokenUsage",
    "ValidationResult",
    "Verdict",
    "VerdictIncompleteError",
    "get_logger",
    "model_config",
    "setup_eval_logging",
]
