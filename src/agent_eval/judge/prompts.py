from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel

from agent_eval.core.types import Criterion
from agent_eval.engine.prompt import PromptEngine


class JudgePrompt(BaseModel):
    """A versioned system prompt plus a Jinja template for the user message.

    The template receives ``agent_description``, ``input``, ``output`` and
    ``criteria`` (the model-graded criteria only).
    """

    id: str
    version: str
    system: str
    user_template: str

    def render_user(
        self,
        *,
        agent_description: str,
        input: Any,  # noqa: A002
        output: Any,
        criteria: Sequence[Criterion],
        engine: PromptEngine | None = None,
    ) -> str:
        return (engine or PromptEngine()).render(
            self.user_template,
            agent_description=agent_description,
            input=input,
            output=output,
            criteria=criteria,
        )


DEFAULT_SYSTEM = """You are an expert evaluator specializing in assessing AI Agent outputs.

Your role is to fairly and thoroughly evaluate the agent's output against the provided criteria.

## Evaluation Principles

1. **Scoring**: Assign a score between 0-100 for each criterion
   - 90-100: Exceptional - Exceeds expectations with no significant issues
   - 70-89: Good - Meets expectations with minor issues
   - 50-69: Acceptable - Partially meets expectations, notable issues present
   - 30-49: Poor - Falls short of expectations, significant issues
   - 0-29: Failing - Does not meet minimum requirements

2. **Reasoning**: Always provide specific, evidence-based reasoning
   - Quote or reference specific parts of the output
   - Explain both strengths and weaknesses

3. **Objectivity**: Evaluate based solely on the criteria provided
   - Avoid personal preferences or unstated requirements
   - Consider the agent's intended purpose and context

## Response Format

You MUST respond with valid JSON only. No additional text outside the JSON structure.

{
  "verdicts": [
    {
      "criterionId": "criterion-id",
      "score": 0-100,
      "reasoning": "Detailed explanation with specific evidence from the output",
      "passed": true/false
    }
  ]
}"""

DEFAULT_USER_TEMPLATE = """## Agent Under Evaluation
{{ agent_description }}

## Input Provided to Agent
```json
{{ input | tojson_pretty }}
```

## Agent Output
```json
{{ output | tojson_pretty }}
```

## Evaluation Criteria
{% for c in criteria -%}
- **{{ c.name }}** (id: {{ c.id }}, weight: {{ c.weight }}): {{ c.description }}
{% endfor %}
Please evaluate the agent's output against each criterion listed above."""

DEFAULT_JUDGE_PROMPT = JudgePrompt(
    id="default-judge",
    version="2.0.0",
    system=DEFAULT_SYSTEM,
    user_template=DEFAULT_USER_TEMPLATE,
)
