"""Pydantic schemas for requests, generated items and workflow results."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from engines.operations import is_placeholder

__all__ = [
    "DIFFICULTY_ORDER",
    "Difficulty",
    "Persona",
    "GenerationRequest",
    "RetrievedExemplar",
    "GeneratedItemPayload",
    "CalibrationAdvice",
    "CandidateItem",
    "ValidationResult",
    "ItemMetrics",
    "WorkflowResult",
    "parse_json_safe",
]

Difficulty = Literal["easy", "medium", "hard"]
DIFFICULTY_ORDER: tuple[str, ...] = ("easy", "medium", "hard")


class Persona(BaseModel):
    """Learner profile used to calibrate and personalise items."""

    model_config = ConfigDict(frozen=True)

    grade: int | None = Field(default=None, description="Learner grade; defaults to the request grade.")
    learning_style: str | None = Field(
        default=None,
        description="One of visual, auditory, kinesthetic or reading_writing.",
    )
    interests: List[str] = Field(default_factory=list, description="Interest tags such as sports or animals.")
    cultural_context: str = Field(
        default="New Zealand",
        description="Cultural context used for wording substitutions.",
    )
    strengths: List[str] = Field(default_factory=list, description="Topics the learner is already strong in.")


class GenerationRequest(BaseModel):
    """Batch request accepted by the routing controller.

    Only the field types are enforced here. Range checks (grade, count,
    supported topic) happen in the controller so that they surface as
    ``InvalidRequest`` instead of a pydantic error.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    subject: str = "mathematics"
    topic: str
    grade_level: int = Field(validation_alias=AliasChoices("grade_level", "gradeLevel", "grade"))
    difficulty: Difficulty = "medium"
    count: int = 1
    persona: Persona | None = None


class RetrievedExemplar(BaseModel):
    """Previously accepted item returned by the similarity store."""

    model_config = ConfigDict(frozen=True)

    text: str
    answer: Union[int, float, str]
    score: float = Field(ge=0.0, le=1.0)
    difficulty: str | None = None
    category: str | None = None


class GeneratedItemPayload(BaseModel):
    """Loose shape of the JSON object a generation backend is asked to emit."""

    model_config = ConfigDict(extra="ignore")

    category: str | None = Field(default=None, validation_alias=AliasChoices("category", "operation", "type"))
    operands: List[Any] | None = None
    answer: Any = None
    question_text: str | None = Field(
        default=None,
        validation_alias=AliasChoices("question_text", "question", "text"),
    )
    explanation: str | None = None


class CalibrationAdvice(BaseModel):
    """Optional narrowing suggested by a model-assisted calibration call."""

    model_config = ConfigDict(extra="ignore")

    min_value: int | None = None
    max_value: int | None = None
    complexity: Literal["simple", "moderate", "complex"] | None = None


class CandidateItem(BaseModel):
    """A generated item. The structured fields are authoritative."""

    model_config = ConfigDict(frozen=True)

    category: str = Field(description="Catalogue category, e.g. multiplication.")
    operands: List[Any] = Field(description="Structured operands the answer is computed from.")
    answer: Union[int, float, str] = Field(description="Computed answer; never empty or a placeholder.")
    answer_type: Literal["numeric", "string", "enum"]
    question_text: str = Field(description="Rendered question, derived from the structured fields.")
    explanation: str
    choices: List[Union[int, float, str]] = Field(
        default_factory=list,
        description="Multiple-choice options: the answer plus unique distractors.",
    )
    grade_level: int
    difficulty: Difficulty
    source: Literal["generated", "fallback"] = "generated"
    template_id: str | None = None
    enhanced: bool = False

    @field_validator("answer", mode="before")
    @classmethod
    def _reject_placeholder(cls, value: Any) -> Any:
        if isinstance(value, bool) or is_placeholder(value):
            raise ValueError(f"answer may not be empty or a placeholder (got {value!r})")
        return value


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    structural: bool
    correctness: bool
    appropriateness: bool
    pedagogy: bool
    diversity: bool
    diversity_score: float = Field(ge=0.0, le=1.0)
    issues: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    repairable: bool = Field(
        default=False,
        description="True when the only failures have a deterministic repair.",
    )


class ItemMetrics(BaseModel):
    """Immutable per-item record folded into the batch result."""

    model_config = ConfigDict(frozen=True)

    index: int
    stage_timings_ms: Dict[str, float] = Field(default_factory=dict)
    retries_used: int = 0
    fallback_used: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    outcome: Literal["accepted", "fallback", "cancelled"] = "accepted"
    issues: List[str] = Field(default_factory=list)


class WorkflowResult(BaseModel):
    items: List[CandidateItem] = Field(default_factory=list)
    per_item_metrics: List[ItemMetrics] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)
    cancelled: bool = False
    summary: Dict[str, Any] = Field(default_factory=dict)


_T = TypeVar("_T", bound=BaseModel)

_FENCE_PATTERN = re.compile(r"^\s*```[a-zA-Z]*\s*|\s*```\s*$")


def _strip_code_fences(text: str) -> str:
    return _FENCE_PATTERN.sub("", text)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass.

    Code fences around the object are tolerated; any other trailing content
    after the first JSON object is rejected.
    """

    if not isinstance(text, str):
        raise TypeError("Model output must be a string")
    text = _strip_code_fences(text)

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except Exception:
        if first_error:
            raise first_error
        raise
