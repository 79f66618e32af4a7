"""Static fallback templates used when an item exhausts its retries."""
from __future__ import annotations

import json
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from engines.operations import (
    OPERATIONS,
    answers_match,
    build_choices,
    coerce_number,
    get_operation,
    is_placeholder,
    parse_fraction,
    shift_operands,
)
from schemas import DIFFICULTY_ORDER, CandidateItem

DEFAULT_TEMPLATES_PATH = Path(__file__).resolve().parent / "engines" / "data" / "fallback_templates.json"


class ItemValidationError(ValueError):
    """Raised when a fallback template fails validation."""


@dataclass(frozen=True)
class FallbackTemplate:
    id: str
    category: str
    difficulty: str
    operands: Tuple[Any, ...]
    answer: Any
    explanation: Optional[str] = None
    question_text: Optional[str] = None


class FallbackTemplateBank:
    """Helper for loading, validating, and selecting fallback templates."""

    REQUIRED_FIELDS = ("id", "category", "difficulty", "operands", "answer")

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else DEFAULT_TEMPLATES_PATH
        if not self.path.exists():
            raise FileNotFoundError(f"Fallback templates file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise ItemValidationError("Fallback templates root must be a JSON list")
        self._templates: List[FallbackTemplate] = []
        self._load(raw)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Sequence[Mapping[str, Any]]]) -> "FallbackTemplateBank":
        """Build a bank from ``{category: [template, ...]}``."""

        entries: List[Dict[str, Any]] = []
        for category, templates in mapping.items():
            for idx, entry in enumerate(templates, start=1):
                if not isinstance(entry, Mapping):
                    raise ItemValidationError(f"Template #{idx} for {category} must be an object")
                data = dict(entry)
                data.setdefault("category", category)
                data.setdefault("id", f"{category}-{data.get('difficulty', 'any')}-{idx}")
                entries.append(data)
        bank = cls.__new__(cls)
        bank.path = None
        bank._templates = []
        bank._load(entries)
        return bank

    @classmethod
    def from_config(cls, config: Any) -> "FallbackTemplateBank":
        mapping = getattr(config, "fallback_templates_by_category", None)
        if mapping:
            return cls.from_mapping(mapping)
        return cls()

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    @classmethod
    def entry_issues(cls, entry: Any) -> List[str]:
        """Return every problem with one raw template entry."""

        if not isinstance(entry, dict):
            return ["Each template must be an object"]
        issues: List[str] = []
        template_id = entry.get("id")
        for field in cls.REQUIRED_FIELDS:
            if field not in entry or entry[field] in (None, ""):
                issues.append(f"Template {template_id} missing required field '{field}'")
        if issues:
            return issues

        category = str(entry["category"])
        spec = OPERATIONS.get(category)
        if spec is None:
            return [f"Template {template_id} has unknown category '{category}'"]
        if entry["difficulty"] not in DIFFICULTY_ORDER:
            issues.append(f"Template {template_id} has unknown difficulty '{entry['difficulty']}'")

        operands = entry["operands"]
        if not isinstance(operands, list) or not spec.accepts_arity(operands):
            issues.append(f"Template {template_id} operands do not fit {category}")
            return issues

        answer = entry["answer"]
        if is_placeholder(answer):
            issues.append(f"Template {template_id} answer is a placeholder")
            return issues
        try:
            expected = spec.evaluate(operands)
        except (ValueError, ZeroDivisionError, TypeError) as exc:
            issues.append(f"Template {template_id} operands cannot be evaluated: {exc}")
            return issues
        if not answers_match(expected, answer, spec.answer_type):
            issues.append(f"Template {template_id} answer {answer!r} does not match operands (expected {expected!r})")

        for key in ("explanation", "question_text"):
            value = entry.get(key)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                issues.append(f"Template {template_id} {key} must be a non-empty string")
        return issues

    def _load(self, raw: Iterable[Any]) -> None:
        templates: List[FallbackTemplate] = []
        seen_ids: set[str] = set()
        for entry in raw:
            issues = self.entry_issues(entry)
            if issues:
                raise ItemValidationError(issues[0])

            template_id = str(entry["id"])
            if template_id in seen_ids:
                raise ItemValidationError(f"Duplicate template id detected: {template_id}")
            seen_ids.add(template_id)

            spec = get_operation(str(entry["category"]))
            answer = entry["answer"]
            if spec.answer_type == "numeric":
                answer = coerce_number(answer)
            elif spec.answer_type == "string":
                answer = str(parse_fraction(str(answer)))
            templates.append(
                FallbackTemplate(
                    id=template_id,
                    category=spec.category,
                    difficulty=str(entry["difficulty"]),
                    operands=tuple(entry["operands"]),
                    answer=answer,
                    explanation=entry.get("explanation"),
                    question_text=entry.get("question_text"),
                )
            )
        self._templates = templates

    @property
    def templates(self) -> List[FallbackTemplate]:
        return list(self._templates)

    # ------------------------------------------------------------------
    # selection helpers
    # ------------------------------------------------------------------
    def templates_for(self, category: str, difficulty: str) -> List[FallbackTemplate]:
        return [t for t in self._templates if t.category == category and t.difficulty == difficulty]

    def coverage(self) -> Dict[str, Dict[str, int]]:
        """Template counts per category and difficulty, zero-filled."""

        report: Dict[str, Dict[str, int]] = {
            category: {difficulty: 0 for difficulty in DIFFICULTY_ORDER} for category in OPERATIONS
        }
        for template in self._templates:
            report[template.category][template.difficulty] += 1
        return report

    def missing_coverage(self) -> List[Tuple[str, str]]:
        return [
            (category, difficulty)
            for category, counts in self.coverage().items()
            for difficulty, count in counts.items()
            if count == 0
        ]

    @staticmethod
    def variant(template: FallbackTemplate, step: int) -> FallbackTemplate:
        """Template with shifted operands and a recomputed answer.

        Used once a batch has consumed every template of a cell. The fixed
        question text and explanation describe the original operands, so the
        variant renders its own from the catalogue.
        """

        spec = get_operation(template.category)
        operands = shift_operands(template.category, template.operands, step)
        return FallbackTemplate(
            id=f"{template.id}~{step}",
            category=template.category,
            difficulty=template.difficulty,
            operands=tuple(operands),
            answer=spec.evaluate(operands),
        )

    def to_candidate(self, template: FallbackTemplate, grade_level: int, *, seed: int = 0) -> CandidateItem:
        spec = get_operation(template.category)
        operands = list(template.operands)
        rng = random.Random(seed)
        return CandidateItem(
            category=template.category,
            operands=operands,
            answer=template.answer,
            answer_type=spec.answer_type,
            question_text=template.question_text or spec.render(operands),
            explanation=template.explanation or spec.explain(operands, template.answer),
            choices=build_choices(template.category, operands, template.answer, rng, allow_negative=True),
            grade_level=grade_level,
            difficulty=template.difficulty,
            source="fallback",
            template_id=template.id,
        )


__all__ = ["FallbackTemplate", "FallbackTemplateBank", "ItemValidationError"]
