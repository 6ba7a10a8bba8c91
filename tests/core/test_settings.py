import logging

import pytest
from pydantic import ValidationError

from agent_eval.core.config import EvalSettings, JudgeScope


def test_defaults():
    settings = EvalSettings()

    assert settings.pass_threshold is None
    assert settings.max_turns == 10
    assert settings.concurrency == 1
    assert settings.judge_scope == JudgeScope.LAST_TURN
    assert settings.log_file is None


def test_from_env_reads_prefixed_variables():
    settings = EvalSettings.from_env(
        {
            "AGENT_EVAL_PASS_THRESHOLD": "85.5",
            "AGENT_EVAL_CONCURRENCY": "4",
            "AGENT_EVAL_JUDGE_SCOPE": "transcript",
            "AGENT_EVAL_LOG_LEVEL": "debug",
            "UNRELATED": "x",
        }
    )

    assert settings.pass_threshold == 85.5
    assert settings.concurrency == 4
    assert settings.judge_scope == JudgeScope.TRANSCRIPT
    assert settings.log_level_value == logging.DEBUG


def test_from_env_overrides_win():
    settings = EvalSettings.from_env({"AGENT_EVAL_MAX_TURNS": "3"}, max_turns=7)
    assert settings.max_turns == 7


def test_empty_env_values_are_ignored():
    settings = EvalSettings.from_env({"AGENT_EVAL_MAX_TURNS": ""})
    assert settings.max_turns == 10


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        EvalSettings.from_env({"AGENT_EVAL_CONCURRENCY": "0"})


def test_unknown_log_level_falls_back_to_info():
    assert EvalSettings(log_level="chatty").log_level_value == logging.INFO
