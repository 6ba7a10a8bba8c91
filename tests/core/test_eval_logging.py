import logging
from unittest.mock import MagicMock

import pytest
from google.genai import types

from agent_eval.core.logging import get_logger, setup_eval_logging
from agent_eval.engine.logging_plugin import ModelCallLoggingPlugin

CONFIGURED_LOGGERS = ("agent_eval", "google_adk", "LiteLLM")


@pytest.fixture(autouse=True)
def reset_file_handlers():
    yield
    for name in CONFIGURED_LOGGERS:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler):
                logger.removeHandler(handler)
                handler.close()
        logger.setLevel(logging.NOTSET)


def test_setup_eval_logging_writes_namespaced_records(tmp_path):
    log_file = tmp_path / "logs" / "eval.log"
    setup_eval_logging(log_file=str(log_file))

    logging.getLogger("agent_eval.multi_turn.runner").debug("turn finished")
    logging.getLogger("google_adk.models").debug("adk record")

    content = log_file.read_text()
    assert "turn finished" in content
    assert "agent_eval.multi_turn.runner" in content
    assert "adk record" in content


def test_setup_eval_logging_does_not_duplicate_handlers(tmp_path):
    setup_eval_logging(log_file=str(tmp_path / "a.log"))
    setup_eval_logging(log_file=str(tmp_path / "b.log"))

    handlers = [
        h
        for h in logging.getLogger("agent_eval").handlers
        if isinstance(h, logging.FileHandler)
    ]
    assert len(handlers) == 1


def test_get_logger_namespaces_names():
    assert get_logger("reports").name == "agent_eval.reports"
    assert get_logger("agent_eval.suite").name == "agent_eval.suite"


@pytest.mark.asyncio
async def test_model_call_logging_plugin(tmp_path):
    log_file = tmp_path / "plugin.log"
    setup_eval_logging(log_file=str(log_file))
    plugin = ModelCallLoggingPlugin()

    ctx = MagicMock()
    ctx.agent_name = "Judge"

    req = MagicMock()
    req.contents = [types.Content(role="user", parts=[types.Part(text="Grade this")])]

    res = MagicMock()
    res.content = types.Content(
        role="model",
        parts=[
            types.Part(
                function_call=types.FunctionCall(
                    name="submitResult", args={"data": {"ok": True}}
                )
            )
        ],
    )

    assert await plugin.before_model_callback(callback_context=ctx, llm_request=req) is None
    assert await plugin.after_model_callback(callback_context=ctx, llm_response=res) is None

    content = log_file.read_text()
    assert "LLM REQUEST [Judge]: Grade this" in content
    assert "LLM RESPONSE [Judge]: call submitResult(" in content
