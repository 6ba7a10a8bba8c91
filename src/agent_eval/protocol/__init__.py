from .agent import ProgressiveAgent
from .progressive import (
    REPORT_PROGRESS_TOOL,
    SUBMIT_RESULT_TOOL,
    TOOL_CALLING_PROTOCOL,
    CompleteEvent,
    CompletionSummary,
    ParseOutcome,
    ProgressEvent,
    ProgressiveOutcome,
    ProgressivePattern,
    ProgressiveRun,
    has_tool_call,
    parse_tool_payload,
    step_count_is,
)

__all__ = [
    "REPORT_PROGRESS_TOOL",
    "SUBMIT_RESULT_TOOL",
    "TOOL_CALLING_PROTOCOL",
    "CompleteEvent",
    "CompletionSummary",
    "ParseOutcome",
    "ProgressEvent",
    "ProgressiveAgent",
    "ProgressiveOutcome",
    "ProgressivePattern",
    "ProgressiveRun",
    "has_tool_call",
    "parse_tool_payload",
    "step_count_is",
]
