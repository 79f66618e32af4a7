"""Validator stage: structural, correctness, appropriateness, pedagogy and diversity checks.

Correctness is always recomputed from the candidate's structured operands.
The rendered question text is only used for length limits and for the
textual half of the diversity measure.
"""

from __future__ import annotations

import logging
import re
from fractions import Fraction
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from calibration_tables import CALIBRATION_TABLES
from config import OrchestratorConfig
from engines.base import PipelinePhase, PipelineState, Stage
from engines.calibrator import CalibrationParams
from engines.operations import (
    COMPARISON_SYMBOLS,
    OPERATIONS,
    answers_match,
    choice_key,
    coerce_number,
    is_placeholder,
    numeric_tokens,
    parse_fraction,
)
from schemas import CandidateItem, ValidationResult

logger = logging.getLogger(__name__)

CHECK_WEIGHTS = {
    "structural": 0.3,
    "correctness": 0.35,
    "appropriateness": 0.15,
    "pedagogy": 0.1,
    "diversity": 0.1,
}

MIN_EXPLANATION_CHARS = 10
ANSWER_DIVERSITY_WEIGHT = 0.4
TEXT_DIVERSITY_WEIGHT = 0.6

REPAIRABLE_CATEGORIES = frozenset({"subtraction", "fraction_subtraction"})
_COMMUTATIVE = frozenset({"addition", "multiplication", "fraction_addition", "comparison"})
_WORD_PATTERN = re.compile(r"[a-z]+")
# Numbers as written, with a sign only when it is not a binary minus.
_SIGNED_NUMBER = re.compile(r"(?<![\w.])-?\d+(?:\.\d+)?(?:/\d+)?")


def _jaccard(left: Set[str], right: Set[str]) -> float:
    if not left and not right:
        return 1.0
    union = left | right
    return len(left & right) / len(union) if union else 0.0


def text_similarity(a: str, b: str) -> float:
    """Blend of word-set and numeric-token Jaccard similarity."""

    words_a = set(_WORD_PATTERN.findall(a.lower()))
    words_b = set(_WORD_PATTERN.findall(b.lower()))
    nums_a = set(numeric_tokens(a))
    nums_b = set(numeric_tokens(b))
    return 0.5 * _jaccard(words_a, words_b) + 0.5 * _jaccard(nums_a, nums_b)


def operand_signature(candidate: CandidateItem) -> Tuple[str, Tuple[str, ...]]:
    keys = [choice_key(op) for op in candidate.operands]
    if candidate.category in _COMMUTATIVE:
        keys.sort()
    return candidate.category, tuple(keys)


class Validator(Stage):
    """Deterministic, side-effect-free candidate checks."""

    name = "validate"

    def __init__(self, config: OrchestratorConfig) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # structural
    # ------------------------------------------------------------------
    def structural_issues(self, candidate: CandidateItem) -> List[str]:
        spec = OPERATIONS.get(candidate.category)
        if spec is None:
            return ["unknown_category"]

        issues: List[str] = []
        if not spec.accepts_arity(candidate.operands):
            issues.append("operand_arity")

        if is_placeholder(candidate.answer):
            issues.append("answer_placeholder")
        elif candidate.answer_type != spec.answer_type or not self._answer_has_type(candidate):
            issues.append("answer_type_mismatch")

        text = candidate.question_text.strip()
        if len(text) < self.config.min_text_chars:
            issues.append("text_too_short")
        elif len(text) > self.config.max_text_chars:
            issues.append("text_too_long")
        if len(text.split()) > self.config.max_text_words:
            issues.append("text_too_many_words")

        if not candidate.explanation.strip():
            issues.append("explanation_missing")

        if candidate.choices:
            keys = [choice_key(choice) for choice in candidate.choices]
            if any(is_placeholder(choice) for choice in candidate.choices):
                issues.append("choices_placeholder")
            if len(set(keys)) != len(keys):
                issues.append("choices_not_unique")
            if choice_key(candidate.answer) not in keys:
                issues.append("choices_missing_answer")
        return issues

    @staticmethod
    def _answer_has_type(candidate: CandidateItem) -> bool:
        value = candidate.answer
        if candidate.answer_type == "numeric":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if candidate.answer_type == "string":
            try:
                parse_fraction(str(value))
            except (ValueError, ZeroDivisionError):
                return False
            return isinstance(value, str)
        return value in COMPARISON_SYMBOLS

    # ------------------------------------------------------------------
    # correctness
    # ------------------------------------------------------------------
    def correctness_issues(self, candidate: CandidateItem) -> List[str]:
        spec = OPERATIONS.get(candidate.category)
        if spec is None or not spec.accepts_arity(candidate.operands):
            return ["operands_invalid"]
        try:
            expected = spec.evaluate(candidate.operands)
        except (ValueError, ZeroDivisionError, TypeError):
            return ["operands_invalid"]
        if not answers_match(expected, candidate.answer, spec.answer_type):
            return ["correctness_mismatch"]
        return []

    def check_integrity(self, candidate: CandidateItem) -> List[str]:
        """Structural plus correctness subset used after enhancement and for fallbacks."""

        issues = self.structural_issues(candidate)
        if "unknown_category" in issues:
            return issues
        return issues + self.correctness_issues(candidate)

    # ------------------------------------------------------------------
    # appropriateness
    # ------------------------------------------------------------------
    def appropriateness_issues(
        self,
        candidate: CandidateItem,
        calibration: Optional[CalibrationParams],
    ) -> Tuple[List[str], bool]:
        issues: List[str] = []
        grade = calibration.grade if calibration else candidate.grade_level
        allow_negative = grade >= self.config.negative_result_min_grade

        if self._is_negative(candidate):
            if not allow_negative:
                issues.append("negative_result")

        if calibration is not None and self._operands_out_of_range(candidate, calibration, allow_negative):
            issues.append("operand_out_of_range")

        cap = calibration.answer_cap if calibration else CALIBRATION_TABLES.answer_cap(grade)
        if candidate.answer_type == "numeric":
            try:
                if abs(coerce_number(candidate.answer)) > cap:
                    issues.append("answer_exceeds_cap")
            except ValueError:
                pass

        repairable = issues == ["negative_result"] and candidate.category in REPAIRABLE_CATEGORIES
        return issues, repairable

    @staticmethod
    def _is_negative(candidate: CandidateItem) -> bool:
        try:
            if candidate.answer_type == "numeric":
                return coerce_number(candidate.answer) < 0
            if candidate.answer_type == "string":
                return parse_fraction(str(candidate.answer)) < 0
        except (ValueError, ZeroDivisionError):
            return False
        return False

    @staticmethod
    def _operands_out_of_range(
        candidate: CandidateItem,
        calibration: CalibrationParams,
        allow_negative: bool,
    ) -> bool:
        category = candidate.category
        try:
            if category in ("fraction_addition", "fraction_subtraction"):
                fractions: List[Fraction] = [parse_fraction(op) for op in candidate.operands]
                if not allow_negative and any(f < 0 for f in fractions):
                    return True
                return any(f.denominator > calibration.max_denominator for f in fractions)
            values = [coerce_number(op) for op in candidate.operands]
        except (ValueError, ZeroDivisionError):
            return False
        if not allow_negative and any(v < 0 for v in values):
            return True
        if category == "multiplication":
            return any(abs(v) > calibration.max_factor for v in values)
        if category == "division":
            dividend, divisor = values
            return abs(divisor) > calibration.max_divisor or abs(dividend) > calibration.max_value
        return any(abs(v) > calibration.max_value for v in values)

    # ------------------------------------------------------------------
    # pedagogy
    # ------------------------------------------------------------------
    @staticmethod
    def pedagogy_issues(candidate: CandidateItem) -> List[str]:
        explanation = candidate.explanation.strip()
        if len(explanation) < MIN_EXPLANATION_CHARS:
            return ["explanation_too_short"]
        if candidate.answer_type == "enum":
            stated = str(candidate.answer).strip() in explanation
        else:
            target = choice_key(candidate.answer)
            stated = any(choice_key(token) == target for token in _SIGNED_NUMBER.findall(explanation))
        return [] if stated else ["explanation_missing_answer"]

    # ------------------------------------------------------------------
    # diversity
    # ------------------------------------------------------------------
    def diversity_score(self, candidate: CandidateItem, batch_so_far: Iterable[CandidateItem]) -> Tuple[float, bool]:
        """Return ``(score, structural_duplicate)`` against accepted items."""

        signature = operand_signature(candidate)
        answer_key = choice_key(candidate.answer)
        score = 1.0
        duplicate = False
        for other in batch_so_far:
            if operand_signature(other) == signature:
                duplicate = True
                score = 0.0
                break
            answers_differ = 1.0 if choice_key(other.answer) != answer_key else 0.0
            text_div = 1.0 - text_similarity(candidate.question_text, other.question_text)
            pair = ANSWER_DIVERSITY_WEIGHT * answers_differ + TEXT_DIVERSITY_WEIGHT * text_div
            score = min(score, pair)
        return round(max(0.0, min(1.0, score)), 4), duplicate

    # ------------------------------------------------------------------
    # public contract
    # ------------------------------------------------------------------
    def validate(
        self,
        candidate: CandidateItem,
        batch_so_far: Sequence[CandidateItem] = (),
        calibration: Optional[CalibrationParams] = None,
    ) -> ValidationResult:
        structural = self.structural_issues(candidate)
        correctness = [] if "unknown_category" in structural else self.correctness_issues(candidate)
        appropriateness, repairable = self.appropriateness_issues(candidate, calibration)
        pedagogy = self.pedagogy_issues(candidate)
        score, duplicate = self.diversity_score(candidate, batch_so_far)
        diversity_ok = not duplicate and score >= self.config.min_diversity

        checks = {
            "structural": not structural,
            "correctness": not correctness,
            "appropriateness": not appropriateness,
            "pedagogy": not pedagogy,
        }
        issues = structural + correctness + appropriateness + pedagogy
        if not diversity_ok:
            issues.append("insufficient_diversity")

        confidence = sum(CHECK_WEIGHTS[name] for name, ok in checks.items() if ok)
        confidence += CHECK_WEIGHTS["diversity"] * score
        passed = all(checks.values()) and diversity_ok
        # A repair only helps when nothing else failed.
        repairable = repairable and not (structural or correctness or pedagogy) and diversity_ok

        return ValidationResult(
            passed=passed,
            structural=checks["structural"],
            correctness=checks["correctness"],
            appropriateness=checks["appropriateness"],
            pedagogy=checks["pedagogy"],
            diversity=diversity_ok,
            diversity_score=score,
            issues=issues,
            confidence=round(max(0.0, min(1.0, confidence)), 4),
            repairable=repairable and not passed,
        )

    async def run(self, state: PipelineState) -> PipelineState:
        state.phase = PipelinePhase.VALIDATE
        if state.candidate is None:
            raise ValueError("validate stage reached without a candidate")
        state.validation = self.validate(state.candidate, list(state.batch_accepted), state.calibration)
        return state


__all__ = ["CHECK_WEIGHTS", "Validator", "operand_signature", "text_similarity"]
