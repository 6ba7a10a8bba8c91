import json
from typing import Any

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError
from pydantic_core import to_jsonable_python

from agent_eval.core.errors import PromptRenderError


def to_json(value: Any, indent: int | None = 2) -> str:
    """Serialize inputs/outputs (including pydantic models) for prompts."""
    return json.dumps(
        to_jsonable_python(value, fallback=str),
        indent=indent,
        ensure_ascii=False,
    )


class PromptEngine:
    """Jinja2-based structured prompting."""

    def __init__(self):
        # Prompts are plain text; HTML escaping would mangle embedded JSON.
        self.env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=False,
        )
        self.env.filters["tojson_pretty"] = to_json

    def render(self, template_str: str, **kwargs: Any) -> str:
        try:
            template = self.env.from_string(template_str)
            return template.render(**kwargs).strip()
        except TemplateError as e:
            raise PromptRenderError.wrap(e) from e
