from typing import Any

from pydantic import TypeAdapter, ValidationError

from agent_eval.core.types import Criterion, ValidationResult


def accuracy(weight: float = 1.0) -> Criterion:
    return Criterion(
        id="accuracy",
        name="Accuracy",
        description=(
            "Evaluates whether the output is factually correct, free from errors, "
            "and avoids hallucinations. Check for incorrect facts, made-up "
            "information, or misrepresentation of the input data."
        ),
        weight=weight,
    )


def consistency(weight: float = 1.0) -> Criterion:
    return Criterion(
        id="consistency",
        name="Consistency",
        description=(
            "Evaluates whether the output is internally coherent and logically "
            "consistent. Check for self-contradictions, conflicting statements, "
            "or logical inconsistencies within the response."
        ),
        weight=weight,
    )


def relevance(weight: float = 1.0) -> Criterion:
    return Criterion(
        id="relevance",
        name="Relevance",
        description=(
            "Evaluates whether the output directly addresses the input and "
            "fulfills the user intent. Check for off-topic content, missing key "
            "requirements, or responses that fail to answer the actual question."
        ),
        weight=weight,
    )


def step_by_step(weight: float = 1.0) -> Criterion:
    return Criterion(
        id="step-by-step",
        name="Step-by-Step Reasoning",
        description=(
            "Evaluates whether the output demonstrates clear, structured reasoning "
            "with explicit steps. Check for numbered steps or a clear progression, "
            "an explanation of the thought process, and intermediate results shown "
            "before the final answer. Penalize outputs that jump directly to the "
            "answer without showing work."
        ),
        weight=weight,
    )


def format_validation_errors(error: ValidationError) -> str:
    lines = []
    for item in error.errors(include_url=False):
        path = ".".join(str(part) for part in item["loc"])
        prefix = f"{path}: " if path else ""
        lines.append(f"- {prefix}{item['msg']}")
    return "\n".join(lines)


def schema(
    model: Any,
    *,
    id: str = "schema-validation",  # noqa: A002
    name: str = "Schema Validation",
    description: str | None = None,
    weight: float = 1.0,
) -> Criterion:
    """A validator criterion that checks the output against a pydantic type.

    ``model`` can be a ``BaseModel`` subclass or anything ``TypeAdapter``
    accepts (``list[Item]``, ``TypedDict``s, ...).
    """
    adapter = TypeAdapter(model)

    def validate(output: Any) -> ValidationResult:
        try:
            adapter.validate_python(output)
        except ValidationError as e:
            return ValidationResult(
                valid=False,
                errors=e.errors(include_url=False, include_context=False),
                error_summary=format_validation_errors(e),
            )
        return ValidationResult(valid=True)

    return Criterion(
        id=id,
        name=name,
        description=description
        or "Programmatically checks that the output conforms to the expected schema.",
        weight=weight,
        validator=validate,
    )
