import logging
import os
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field

from agent_eval.core.types import DEFAULT_MAX_TURNS

ENV_PREFIX = "AGENT_EVAL_"


class JudgeScope(StrEnum):
    """Which slice of a multi-turn conversation the final judge call grades."""

    LAST_TURN = "last_turn"
    TRANSCRIPT = "transcript"


class EvalSettings(BaseModel):
    """Suite-wide defaults.

    Values can come from code or from ``AGENT_EVAL_*`` environment variables via
    :meth:`from_env`. A ``pass_threshold`` overrides every judge's own pass
    decision; ``max_turns`` bounds multi-turn cases that do not set one.
    """

    pass_threshold: float | None = Field(default=None, ge=0, le=100)
    max_turns: int = Field(default=DEFAULT_MAX_TURNS, ge=1)
    concurrency: int = Field(default=1, ge=1)
    judge_scope: JudgeScope = JudgeScope.LAST_TURN
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> Self:
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for field_name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update(overrides)
        return cls.model_validate(values)

    @property
    def log_level_value(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO
