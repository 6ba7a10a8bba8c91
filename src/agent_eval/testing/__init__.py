from .mocks import (
    MockAgent,
    MockJudge,
    ScriptedModel,
    ScriptedToolModel,
    progress,
    submit,
)

__all__ = [
    "MockAgent",
    "MockJudge",
    "ScriptedModel",
    "ScriptedToolModel",
    "progress",
    "submit",
]
