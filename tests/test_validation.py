"""Validator tests, one check family at a time."""

import random

import pytest

from config import OrchestratorConfig
from engines.calibrator import Calibrator
from engines.operations import build_choices, get_operation
from engines.validation import CHECK_WEIGHTS, Validator, operand_signature, text_similarity
from schemas import CandidateItem, GenerationRequest


def _candidate(category="multiplication", operands=(6, 7), *, answer=None, grade=5, **overrides):
    spec = get_operation(category)
    operands = list(operands)
    if answer is None:
        answer = spec.evaluate(operands)
    fields = dict(
        category=category,
        operands=operands,
        answer=answer,
        answer_type=spec.answer_type,
        question_text=spec.render(operands),
        explanation=spec.explain(operands, answer),
        choices=build_choices(category, operands, answer, random.Random(0), allow_negative=True),
        grade_level=grade,
        difficulty="medium",
    )
    fields.update(overrides)
    return CandidateItem(**fields)


def _calibration(topic="multiplication", grade=5, difficulty="medium"):
    request = GenerationRequest(topic=topic, grade_level=grade, difficulty=difficulty)
    return Calibrator(OrchestratorConfig()).calibrate(None, request)


@pytest.fixture
def validator():
    return Validator(OrchestratorConfig())


def test_valid_item_passes_with_full_confidence(validator):
    result = validator.validate(_candidate(), [], _calibration())
    assert result.passed
    assert result.issues == []
    assert result.confidence == pytest.approx(sum(CHECK_WEIGHTS.values()))
    assert result.diversity_score == 1.0


def test_wrong_answer_is_correctness_mismatch(validator):
    result = validator.validate(_candidate(answer=41), [], _calibration())
    assert not result.passed
    assert not result.correctness
    assert "correctness_mismatch" in result.issues
    assert result.confidence < 0.7


def test_correctness_ignores_rendered_text(validator):
    # Text claims 2 + 2 but the structured operands are authoritative.
    candidate = _candidate(question_text="What is 2 + 2? Think carefully.")
    result = validator.validate(candidate, [], _calibration())
    assert result.correctness


def test_inexact_division_is_operands_invalid(validator):
    candidate = _candidate("division", (36, 4)).model_copy(update={"operands": [37, 4]})
    assert "operands_invalid" in validator.correctness_issues(candidate)


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"operands": [6]}, "operand_arity"),
        ({"answer_type": "string"}, "answer_type_mismatch"),
        ({"question_text": "6 × 7"}, "text_too_short"),
        ({"question_text": "What is six times seven? " * 30}, "text_too_long"),
        ({"explanation": "  "}, "explanation_missing"),
        ({"choices": [42, 42, 48, 49]}, "choices_not_unique"),
        ({"choices": [40, 48, 49]}, "choices_missing_answer"),
        ({"choices": [42, "Option B", 48]}, "choices_placeholder"),
        ({"category": "logarithms"}, "unknown_category"),
    ],
)
def test_structural_issue_codes(validator, overrides, code):
    candidate = _candidate().model_copy(update=overrides)
    assert code in validator.structural_issues(candidate)


def test_too_many_words(validator):
    text = "What is " + " ".join(["very"] * 70) + " 6 × 7?"
    config = OrchestratorConfig(max_text_chars=1000)
    candidate = _candidate().model_copy(update={"question_text": text})
    assert "text_too_many_words" in Validator(config).structural_issues(candidate)


def test_negative_subtraction_below_threshold_is_repairable(validator):
    candidate = _candidate("subtraction", (3, 9), grade=3)
    result = validator.validate(candidate, [], _calibration("subtraction", grade=3))
    assert not result.passed
    assert result.issues == ["negative_result"]
    assert result.repairable


def test_negative_result_allowed_from_threshold_grade(validator):
    candidate = _candidate("subtraction", (3, 9), grade=7)
    result = validator.validate(candidate, [], _calibration("subtraction", grade=7))
    assert result.passed


def test_out_of_range_operands_are_not_repairable(validator):
    candidate = _candidate("multiplication", (6, 30))
    result = validator.validate(candidate, [], _calibration())
    assert "operand_out_of_range" in result.issues
    assert not result.repairable


def test_answer_cap_by_grade(validator):
    candidate = _candidate("addition", (30, 40), grade=1)
    issues, _ = validator.appropriateness_issues(candidate, None)
    assert "answer_exceeds_cap" in issues


def test_pedagogy_requires_answer_in_explanation(validator):
    short = _candidate().model_copy(update={"explanation": "6×7"})
    assert validator.pedagogy_issues(short) == ["explanation_too_short"]
    vague = _candidate().model_copy(update={"explanation": "Multiply the two numbers together."})
    assert validator.pedagogy_issues(vague) == ["explanation_missing_answer"]


def test_explanation_must_state_the_whole_answer(validator):
    item = _candidate("multiplication", (3, 4))
    longer = item.model_copy(update={"explanation": "Three rows of four make 120 in total."})
    assert validator.pedagogy_issues(longer) == ["explanation_missing_answer"]
    exact = item.model_copy(update={"explanation": "Three rows of four make 12 in total."})
    assert validator.pedagogy_issues(exact) == []

    negative = _candidate("subtraction", (3, 10), grade=7)
    assert negative.answer == -7
    assert validator.pedagogy_issues(negative) == []
    unsigned = negative.model_copy(update={"explanation": "Count back from 10 to 3 to get 7."})
    assert validator.pedagogy_issues(unsigned) == ["explanation_missing_answer"]

    fraction = _candidate("fraction_addition", ("1/4", "1/4"))
    assert validator.pedagogy_issues(fraction) == []


def test_structural_duplicate_fails_diversity(validator):
    accepted = [_candidate("multiplication", (6, 7))]
    result = validator.validate(_candidate("multiplication", (7, 6)), accepted, _calibration())
    assert not result.diversity
    assert result.diversity_score == 0.0
    assert "insufficient_diversity" in result.issues


def test_distinct_items_pass_diversity(validator):
    accepted = [_candidate("multiplication", (3, 4)), _candidate("multiplication", (8, 9))]
    result = validator.validate(_candidate("multiplication", (5, 6)), accepted, _calibration())
    assert result.diversity
    assert 0.25 <= result.diversity_score <= 1.0


def test_subtraction_operand_order_matters_for_signature():
    a = _candidate("subtraction", (9, 3))
    b = _candidate("subtraction", (3, 9), grade=7)
    assert operand_signature(a) != operand_signature(b)


def test_text_similarity_bounds():
    assert text_similarity("What is 6 × 7?", "What is 6 × 7?") == 1.0
    assert text_similarity("What is 6 × 7?", "Which symbol fits 12 __ 3?") < 0.5


def test_validate_is_deterministic(validator):
    candidate = _candidate()
    calibration = _calibration()
    assert validator.validate(candidate, [], calibration) == validator.validate(candidate, [], calibration)


def test_check_integrity_skips_policy_checks(validator):
    candidate = _candidate("subtraction", (3, 9), grade=2)
    assert validator.check_integrity(candidate) == []
