import random

import pytest

from engines.operations import (
    OPERATIONS,
    answers_match,
    build_choices,
    choice_key,
    coerce_number,
    get_operation,
    is_placeholder,
    is_supported_subject,
    numeric_tokens,
    resolve_category,
    sample_operands,
    shift_operands,
)


@pytest.mark.parametrize(
    "topic, expected",
    [
        ("multiplication", "multiplication"),
        ("Times Tables", "multiplication"),
        ("fractions", "fraction_addition"),
        ("fraction-subtraction", "fraction_subtraction"),
        ("sequences", "pattern"),
        ("comparing numbers", "comparison"),
        ("photosynthesis", None),
        ("", None),
    ],
)
def test_resolve_category_aliases(topic, expected):
    assert resolve_category(topic) == expected


def test_subject_aliases():
    assert is_supported_subject("Maths")
    assert is_supported_subject("mathematics")
    assert not is_supported_subject("biology")


@pytest.mark.parametrize(
    "value",
    ["Option A", "option d", "", "   ", None, "N/A", "Sample correct answer", "[numeric answer]", "?"],
)
def test_placeholders_detected(value):
    assert is_placeholder(value)


@pytest.mark.parametrize("value", [0, 12, "3/4", "<", "7"])
def test_real_answers_are_not_placeholders(value):
    assert not is_placeholder(value)


def test_evaluators():
    assert get_operation("addition").evaluate([12, 30]) == 42
    assert get_operation("subtraction").evaluate([5, 9]) == -4
    assert get_operation("multiplication").evaluate([6, 7]) == 42
    assert get_operation("division").evaluate([56, 8]) == 7
    assert get_operation("fraction_addition").evaluate(["1/4", "2/4"]) == "3/4"
    assert get_operation("fraction_subtraction").evaluate(["5/6", "1/3"]) == "1/2"
    assert get_operation("pattern").evaluate([3, 7, 11, 15]) == 19
    assert get_operation("comparison").evaluate([47, 74]) == "<"
    assert get_operation("comparison").evaluate([36, 36]) == "="


def test_inexact_division_and_broken_pattern_are_rejected():
    with pytest.raises(ValueError):
        get_operation("division").evaluate([7, 2])
    with pytest.raises(ValueError):
        get_operation("division").evaluate([7, 0])
    with pytest.raises(ValueError):
        get_operation("pattern").evaluate([1, 2, 4])


def test_rendered_text_contains_operands_and_explanation_contains_answer():
    for category, operands in {
        "addition": [8, 5],
        "division": [36, 4],
        "fraction_addition": ["1/3", "1/6"],
        "pattern": [2, 4, 6],
        "comparison": [9, 4],
    }.items():
        spec = get_operation(category)
        answer = spec.evaluate(operands)
        text = spec.render(operands)
        for operand in operands:
            assert str(operand) in text
        assert str(answer) in spec.explain(operands, answer)


def test_coerce_number_normalises_integral_floats():
    assert coerce_number(4.0) == 4 and isinstance(coerce_number(4.0), int)
    assert coerce_number("1,200") == 1200
    assert coerce_number(2.5) == 2.5
    with pytest.raises(ValueError):
        coerce_number(True)
    with pytest.raises(ValueError):
        coerce_number("seven")


def test_answers_match_by_type():
    assert answers_match(42, "42", "numeric")
    assert answers_match("1/2", "2/4", "string")
    assert not answers_match("1/2", "1/3", "string")
    assert answers_match("<", " < ", "enum")
    assert not answers_match(42, "Option A", "numeric")


def test_choice_key_normalises_equivalent_values():
    assert choice_key(4.0) == choice_key("4") == "4"
    assert choice_key("2/4") == "1/2"
    assert choice_key(">") == ">"


@pytest.mark.parametrize(
    "category, operands",
    [
        ("addition", [3, 4]),
        ("subtraction", [10, 3]),
        ("multiplication", [6, 7]),
        ("division", [42, 6]),
        ("fraction_addition", ["1/4", "1/4"]),
        ("fraction_subtraction", ["3/4", "1/4"]),
        ("pattern", [5, 10, 15, 20]),
        ("comparison", [12, 21]),
    ],
)
def test_choices_are_unique_and_include_answer(category, operands):
    spec = get_operation(category)
    answer = spec.evaluate(operands)
    choices = build_choices(category, operands, answer, random.Random(3))
    keys = [choice_key(choice) for choice in choices]
    assert len(keys) == len(set(keys))
    assert choice_key(answer) in keys
    assert len(choices) == (3 if category == "comparison" else 4)


def test_addition_distractors_follow_offset_policy():
    distractors = get_operation("addition").distractors([3, 4], 7, False)
    assert distractors == [5, 9, 11]


def test_distractors_never_negative_unless_allowed():
    distractors = get_operation("subtraction").distractors([1, 1], 0, False)
    assert all(value >= 0 for value in distractors)
    assert len(set(distractors)) == 3


def test_sample_operands_stay_within_bounds():
    bounds = {"min_value": 1, "max_value": 50, "max_factor": 9, "max_divisor": 6, "max_denominator": 8}
    rng = random.Random(11)
    for _ in range(50):
        for category in OPERATIONS:
            operands = sample_operands(category, bounds, rng)
            spec = get_operation(category)
            assert spec.accepts_arity(operands)
            answer = spec.evaluate(operands)
            if category == "multiplication":
                assert all(2 <= op <= 9 for op in operands)
            if category == "division":
                assert operands[1] <= 6
            if category == "subtraction":
                assert answer >= 0
            if category == "pattern":
                assert all(1 <= op <= 50 for op in operands)


def test_numeric_tokens():
    assert numeric_tokens("What is 3/4 + 1.5 - 2?") == ["3/4", "1.5", "2"]


@pytest.mark.parametrize(
    "category, operands",
    [
        ("addition", [3, 4]),
        ("subtraction", [9, 9]),
        ("multiplication", [4, 6]),
        ("division", [24, 4]),
        ("fraction_addition", ["1/4", "2/4"]),
        ("fraction_subtraction", ["1/2", "1/2"]),
        ("fraction_subtraction", ["3/2", "1/2"]),
        ("pattern", [2, 5, 8]),
        ("comparison", [7, 3]),
    ],
)
def test_shifted_operands_are_distinct_and_well_formed(category, operands):
    spec = get_operation(category)
    original = spec.evaluate(operands)
    seen = {tuple(choice_key(op) for op in operands)}
    for step in range(1, 6):
        shifted = shift_operands(category, operands, step)
        assert spec.accepts_arity(shifted)
        answer = spec.evaluate(shifted)
        key = tuple(choice_key(op) for op in shifted)
        assert key not in seen
        seen.add(key)
        if spec.answer_type == "numeric":
            assert answer >= 0
        if category == "fraction_subtraction":
            assert not answer.startswith("-")
        if category == "comparison":
            assert answer == original


def test_shift_requires_positive_step():
    with pytest.raises(ValueError):
        shift_operands("addition", [1, 2], 0)
