from enum import StrEnum
from typing import Any, Self


class EvalErrorCode(StrEnum):
    """Error codes used to tell failure kinds apart in results and reports."""

    LLM_API_ERROR = "LLM_API_ERROR"
    VERDICT_INCOMPLETE = "VERDICT_INCOMPLETE"
    PROTOCOL_EXHAUSTED = "PROTOCOL_EXHAUSTED"
    AGENT_EXECUTION_ERROR = "AGENT_EXECUTION_ERROR"
    INPUT_RESOLUTION_ERROR = "INPUT_RESOLUTION_ERROR"
    INVALID_CONFIG = "INVALID_CONFIG"
    TEMPLATE_ERROR = "TEMPLATE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class EvalError(Exception):
    """Base error for evaluation failures.

    Carries a machine-readable ``code`` and a free-form ``context`` mapping so a
    report can say *why* a case failed, not only that it did.
    """

    default_code: EvalErrorCode = EvalErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: EvalErrorCode | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        code: EvalErrorCode | None = None,
        **context: Any,
    ) -> "EvalError":
        """Wrap an arbitrary exception. Existing ``EvalError`` instances pass through."""
        if isinstance(exc, EvalError):
            return exc
        return cls(
            f"{type(exc).__name__}: {exc}",
            code=code,
            context=context,
            cause=exc,
        )

    def to_dict(self) -> dict[str, Any]:
        cause = self.__cause__
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": str(self.code),
            "context": self.context,
            "cause": str(cause) if cause is not None else None,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!s}, message={self.message!r})"


class ModelCallError(EvalError):
    """The model call failed, or its structured response did not match the schema."""

    default_code = EvalErrorCode.LLM_API_ERROR


class VerdictIncompleteError(EvalError):
    """The judge model answered but left out verdicts for some criteria."""

    default_code = EvalErrorCode.VERDICT_INCOMPLETE

    def __init__(
        self,
        missing_ids: list[str],
        provided_ids: list[str],
        message: str | None = None,
    ) -> None:
        self.missing_ids = list(missing_ids)
        self.provided_ids = list(provided_ids)
        super().__init__(
            message
            or (
                "Judge response missing verdicts for criteria: "
                + ", ".join(self.missing_ids)
            ),
            context={
                "missing_criteria_ids": self.missing_ids,
                "provided_ids": self.provided_ids,
            },
        )


class ProtocolExhaustedError(EvalError):
    """The model finished its turn without a valid ``submitResult`` call."""

    default_code = EvalErrorCode.PROTOCOL_EXHAUSTED

    def __init__(self, last_parse_error: str | None = None) -> None:
        self.last_parse_error = last_parse_error
        base = "No result received."
        detail = (
            f" Last parse error: {last_parse_error}"
            if last_parse_error
            else " The model did not call the submitResult tool."
        )
        super().__init__(
            base + detail,
            context={"last_parse_error": last_parse_error},
        )


class AgentExecutionError(EvalError):
    """The agent under test raised while executing a turn."""

    default_code = EvalErrorCode.AGENT_EXECUTION_ERROR


class InputResolutionError(EvalError):
    """A follow-up input could not be produced."""

    default_code = EvalErrorCode.INPUT_RESOLUTION_ERROR


class ConfigurationError(EvalError):
    """A test case, condition list or judge was configured incorrectly."""

    default_code = EvalErrorCode.INVALID_CONFIG


class PromptRenderError(EvalError):
    default_code = EvalErrorCode.TEMPLATE_ERROR

    @classmethod
    def wrap(cls, exc: BaseException) -> Self:
        return cls(f"Failed to render prompt template: {exc}", cause=exc)
