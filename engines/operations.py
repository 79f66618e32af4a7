"""Catalogue of item categories with their evaluators and distractor policies.

The catalogue is the single source of truth for what an operand set means:
the generator renders text from it, the validator recomputes answers from
it, and fallback templates are checked against it at load time. Nothing in
here ever reads a rendered question back.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Union

AnswerType = Literal["numeric", "string", "enum"]
Answer = Union[int, float, str]

PLACEHOLDER_ANSWERS = frozenset(
    {
        "option a",
        "option b",
        "option c",
        "option d",
        "sample correct answer",
        "answer",
        "n/a",
        "na",
        "none",
        "null",
        "nan",
        "tbd",
        "todo",
        "unknown",
        "?",
        "...",
        "[numeric answer]",
        "<answer>",
    }
)

COMPARISON_SYMBOLS = ("<", ">", "=")

SUBJECT_ALIASES = frozenset({"mathematics", "math", "maths"})

_TOPIC_ALIASES: Dict[str, str] = {
    "addition": "addition",
    "add": "addition",
    "adding": "addition",
    "sums": "addition",
    "subtraction": "subtraction",
    "subtract": "subtraction",
    "take away": "subtraction",
    "multiplication": "multiplication",
    "multiply": "multiplication",
    "times tables": "multiplication",
    "times": "multiplication",
    "division": "division",
    "divide": "division",
    "sharing": "division",
    "fraction addition": "fraction_addition",
    "adding fractions": "fraction_addition",
    "fractions": "fraction_addition",
    "fraction subtraction": "fraction_subtraction",
    "subtracting fractions": "fraction_subtraction",
    "pattern": "pattern",
    "patterns": "pattern",
    "number patterns": "pattern",
    "sequences": "pattern",
    "comparison": "comparison",
    "comparing numbers": "comparison",
    "compare": "comparison",
    "ordering": "comparison",
}

_NUMERIC_TOKEN = re.compile(r"\d+(?:\.\d+)?(?:/\d+)?")


def _normalize_label(value: str) -> str:
    return " ".join(str(value).lower().replace("_", " ").replace("-", " ").split())


def resolve_category(topic: str) -> Optional[str]:
    """Map a request topic (or alias) onto a catalogue category."""

    if not topic:
        return None
    return _TOPIC_ALIASES.get(_normalize_label(topic))


def is_supported_subject(subject: str) -> bool:
    return _normalize_label(subject) in SUBJECT_ALIASES


def numeric_tokens(text: str) -> List[str]:
    """Return the numeric tokens of ``text`` in order of appearance."""

    return _NUMERIC_TOKEN.findall(text or "")


def is_placeholder(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        cleaned = value.strip().lower()
        return not cleaned or cleaned in PLACEHOLDER_ANSWERS
    return False


# ----------------------------------------------------------------------
# value helpers
# ----------------------------------------------------------------------
def coerce_number(value: Any) -> Union[int, float]:
    """Coerce ``value`` to an int when integral, otherwise a float."""

    if isinstance(value, bool):
        raise ValueError("booleans are not numeric answers")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError("non-finite number")
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise ValueError("empty numeric string")
        number = float(text)
        return coerce_number(number)
    raise ValueError(f"unsupported numeric value: {value!r}")


def parse_fraction(value: Any) -> Fraction:
    if isinstance(value, bool):
        raise ValueError("booleans are not fractions")
    if isinstance(value, Fraction):
        return value
    if isinstance(value, int):
        return Fraction(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty fraction string")
        fraction = Fraction(text)
        return fraction
    raise ValueError(f"unsupported fraction value: {value!r}")


def format_number(value: Union[int, float]) -> str:
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def format_fraction(value: Fraction) -> str:
    return str(value)


def format_answer(value: Answer) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_number(value)
    return str(value)


# ----------------------------------------------------------------------
# evaluators
# ----------------------------------------------------------------------
def _ints(operands: Sequence[Any]) -> List[Union[int, float]]:
    return [coerce_number(op) for op in operands]


def _eval_addition(operands: Sequence[Any]) -> Answer:
    a, b = _ints(operands)
    return coerce_number(a + b)


def _eval_subtraction(operands: Sequence[Any]) -> Answer:
    a, b = _ints(operands)
    return coerce_number(a - b)


def _eval_multiplication(operands: Sequence[Any]) -> Answer:
    a, b = _ints(operands)
    return coerce_number(a * b)


def _eval_division(operands: Sequence[Any]) -> Answer:
    a, b = _ints(operands)
    if b == 0:
        raise ValueError("division by zero")
    quotient = Fraction(a) / Fraction(b)
    if quotient.denominator != 1:
        raise ValueError("division items must divide exactly")
    return int(quotient)


def _eval_fraction_addition(operands: Sequence[Any]) -> Answer:
    a, b = (parse_fraction(op) for op in operands)
    return format_fraction(a + b)


def _eval_fraction_subtraction(operands: Sequence[Any]) -> Answer:
    a, b = (parse_fraction(op) for op in operands)
    return format_fraction(a - b)


def _eval_pattern(operands: Sequence[Any]) -> Answer:
    terms = _ints(operands)
    step = terms[1] - terms[0]
    for left, right in zip(terms, terms[1:]):
        if right - left != step:
            raise ValueError("pattern terms are not an arithmetic sequence")
    return coerce_number(terms[-1] + step)


def _eval_comparison(operands: Sequence[Any]) -> Answer:
    a, b = _ints(operands)
    if a < b:
        return "<"
    if a > b:
        return ">"
    return "="


# ----------------------------------------------------------------------
# renderers
# ----------------------------------------------------------------------
def _fmt(op: Any) -> str:
    if isinstance(op, str):
        return op.strip()
    return format_number(coerce_number(op))


def _binary_text(symbol: str) -> Callable[[Sequence[Any]], str]:
    def _render(operands: Sequence[Any]) -> str:
        a, b = operands
        return f"What is {_fmt(a)} {symbol} {_fmt(b)}?"

    return _render


def _render_fraction(symbol: str) -> Callable[[Sequence[Any]], str]:
    def _render(operands: Sequence[Any]) -> str:
        a, b = operands
        return f"What is {_fmt(a)} {symbol} {_fmt(b)}? Give your answer as a fraction in simplest form."

    return _render


def _render_pattern(operands: Sequence[Any]) -> str:
    terms = ", ".join(_fmt(op) for op in operands)
    return f"What is the next number in the pattern {terms}, ...?"


def _render_comparison(operands: Sequence[Any]) -> str:
    a, b = operands
    return f"Which symbol makes this true: {_fmt(a)} __ {_fmt(b)}? Choose <, > or =."


def _explain_binary(verb: str) -> Callable[[Sequence[Any], Answer], str]:
    def _explain(operands: Sequence[Any], answer: Answer) -> str:
        a, b = operands
        return f"{verb.format(a=_fmt(a), b=_fmt(b))} The answer is {format_answer(answer)}."

    return _explain


def _explain_pattern(operands: Sequence[Any], answer: Answer) -> str:
    terms = _ints(operands)
    step = terms[1] - terms[0]
    direction = "adds" if step >= 0 else "subtracts"
    return (
        f"Each term {direction} {format_number(abs(step))}. "
        f"After {format_number(terms[-1])} comes {format_answer(answer)}."
    )


def _explain_comparison(operands: Sequence[Any], answer: Answer) -> str:
    a, b = operands
    words = {"<": "is less than", ">": "is greater than", "=": "is equal to"}
    return f"{_fmt(a)} {words[str(answer)]} {_fmt(b)}, so the symbol is {answer}."


# ----------------------------------------------------------------------
# distractor strategies
# ----------------------------------------------------------------------
def _pick_numeric(answer: Answer, candidates: Sequence[Any], *, allow_negative: bool, needed: int = 3) -> List[Answer]:
    chosen: List[Answer] = []
    seen = {format_answer(answer)}
    for raw in candidates:
        try:
            value = coerce_number(raw)
        except ValueError:
            continue
        if value < 0 and not allow_negative:
            continue
        key = format_answer(value)
        if key in seen:
            continue
        seen.add(key)
        chosen.append(value)
        if len(chosen) == needed:
            return chosen
    # Pad with widening offsets so every item has a full choice set.
    base = coerce_number(answer)
    offset = 1
    while len(chosen) < needed:
        for value in (base + offset, base - offset):
            if value < 0 and not allow_negative:
                continue
            key = format_answer(value)
            if key not in seen:
                seen.add(key)
                chosen.append(value)
                if len(chosen) == needed:
                    break
        offset += 1
    return chosen


def _distract_addition(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    a = coerce_number(answer)
    return _pick_numeric(answer, [a - 2, a + 2, a + 4, a + 1, a - 1], allow_negative=allow_negative)


def _distract_subtraction(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    x, y = _ints(operands)
    a = coerce_number(answer)
    return _pick_numeric(answer, [a + 1, a - 1, x + y, a + 10, y - x], allow_negative=allow_negative)


def _distract_multiplication(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    x, y = _ints(operands)
    a = coerce_number(answer)
    return _pick_numeric(
        answer,
        [(x + 1) * y, x * (y + 1), a * 2, x + y, x * (y - 1)],
        allow_negative=allow_negative,
    )


def _distract_division(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    x, y = _ints(operands)
    a = coerce_number(answer)
    return _pick_numeric(answer, [a + 1, a - 1, y, a + 2, x - y], allow_negative=allow_negative)


def _pick_fractions(answer: Answer, candidates: Sequence[Fraction], *, allow_negative: bool) -> List[Answer]:
    chosen: List[Answer] = []
    seen = {str(parse_fraction(answer))}
    base = parse_fraction(answer)
    step = Fraction(1, max(2, base.denominator))
    pool = list(candidates) + [base + step * k for k in range(1, 8)]
    for value in pool:
        if value < 0 and not allow_negative:
            continue
        key = format_fraction(value)
        if key in seen:
            continue
        seen.add(key)
        chosen.append(key)
        if len(chosen) == 3:
            break
    return chosen


def _distract_fraction_addition(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    a, b = (parse_fraction(op) for op in operands)
    base = parse_fraction(answer)
    slips = [
        Fraction(a.numerator + b.numerator, a.denominator + b.denominator),
        Fraction(a.numerator + b.numerator, max(a.denominator, b.denominator)),
        base + Fraction(1, base.denominator or 1),
    ]
    return _pick_fractions(answer, slips, allow_negative=allow_negative)


def _distract_fraction_subtraction(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    a, b = (parse_fraction(op) for op in operands)
    base = parse_fraction(answer)
    slips = [a + b, b - a, base + Fraction(1, base.denominator or 1)]
    if a.denominator != b.denominator and a.numerator >= b.numerator:
        slips.insert(0, Fraction(a.numerator - b.numerator, abs(a.denominator - b.denominator) or 1))
    return _pick_fractions(answer, slips, allow_negative=allow_negative)


def _distract_pattern(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    terms = _ints(operands)
    step = terms[1] - terms[0]
    a = coerce_number(answer)
    return _pick_numeric(answer, [a + step, terms[-1], a + 1, a - 1], allow_negative=allow_negative)


def _distract_comparison(operands: Sequence[Any], answer: Answer, allow_negative: bool) -> List[Answer]:
    return [symbol for symbol in COMPARISON_SYMBOLS if symbol != answer]


@dataclass(frozen=True)
class OperationSpec:
    """Everything the workflow knows about one item category."""

    category: str
    min_operands: int
    max_operands: int
    answer_type: AnswerType
    evaluate: Callable[[Sequence[Any]], Answer]
    render: Callable[[Sequence[Any]], str]
    explain: Callable[[Sequence[Any], Answer], str]
    distractors: Callable[[Sequence[Any], Answer, bool], List[Answer]]

    def accepts_arity(self, operands: Sequence[Any]) -> bool:
        return self.min_operands <= len(operands) <= self.max_operands


OPERATIONS: Dict[str, OperationSpec] = {
    "addition": OperationSpec(
        "addition", 2, 2, "numeric", _eval_addition, _binary_text("+"),
        _explain_binary("Add {a} and {b}."), _distract_addition,
    ),
    "subtraction": OperationSpec(
        "subtraction", 2, 2, "numeric", _eval_subtraction, _binary_text("-"),
        _explain_binary("Take {b} away from {a}."), _distract_subtraction,
    ),
    "multiplication": OperationSpec(
        "multiplication", 2, 2, "numeric", _eval_multiplication, _binary_text("×"),
        _explain_binary("Multiply {a} by {b}: {a} groups of {b}."), _distract_multiplication,
    ),
    "division": OperationSpec(
        "division", 2, 2, "numeric", _eval_division, _binary_text("÷"),
        _explain_binary("Share {a} into {b} equal groups."), _distract_division,
    ),
    "fraction_addition": OperationSpec(
        "fraction_addition", 2, 2, "string", _eval_fraction_addition, _render_fraction("+"),
        _explain_binary("Rewrite {a} and {b} with a common denominator, add the numerators and simplify."),
        _distract_fraction_addition,
    ),
    "fraction_subtraction": OperationSpec(
        "fraction_subtraction", 2, 2, "string", _eval_fraction_subtraction, _render_fraction("-"),
        _explain_binary("Rewrite {a} and {b} with a common denominator, subtract the numerators and simplify."),
        _distract_fraction_subtraction,
    ),
    "pattern": OperationSpec(
        "pattern", 3, 6, "numeric", _eval_pattern, _render_pattern, _explain_pattern, _distract_pattern,
    ),
    "comparison": OperationSpec(
        "comparison", 2, 2, "enum", _eval_comparison, _render_comparison, _explain_comparison,
        _distract_comparison,
    ),
}

SUPPORTED_CATEGORIES = tuple(OPERATIONS)


def get_operation(category: str) -> OperationSpec:
    try:
        return OPERATIONS[category]
    except KeyError:
        raise KeyError(f"Unknown item category: {category}") from None


def answers_match(expected: Answer, actual: Any, answer_type: AnswerType) -> bool:
    """Compare a recomputed answer with a candidate's structured answer."""

    if is_placeholder(actual):
        return False
    try:
        if answer_type == "numeric":
            return abs(float(coerce_number(actual)) - float(coerce_number(expected))) <= 1e-9
        if answer_type == "string":
            return parse_fraction(actual) == parse_fraction(expected)
    except (ValueError, ZeroDivisionError):
        return False
    return str(actual).strip() == str(expected)


def choice_key(value: Any) -> str:
    """Normalized identity of a multiple-choice option."""

    try:
        return format_number(coerce_number(value))
    except ValueError:
        pass
    try:
        return format_fraction(parse_fraction(value))
    except (ValueError, ZeroDivisionError):
        return str(value).strip().lower()


def build_choices(
    category: str,
    operands: Sequence[Any],
    answer: Answer,
    rng: random.Random,
    *,
    allow_negative: bool = False,
) -> List[Answer]:
    """Return the answer plus three distractors in a shuffled order."""

    spec = get_operation(category)
    choices: List[Answer] = [answer, *spec.distractors(operands, answer, allow_negative)]
    rng.shuffle(choices)
    return choices


# ----------------------------------------------------------------------
# operand sampling (offline generation and tests)
# ----------------------------------------------------------------------
def sample_operands(category: str, bounds: Mapping[str, Any], rng: random.Random) -> List[Any]:
    """Draw operands for ``category`` inside calibrated ``bounds``."""

    lo = max(0, int(bounds.get("min_value", 1)))
    hi = max(lo + 1, int(bounds.get("max_value", 10)))
    max_factor = max(2, int(bounds.get("max_factor", 10)))
    max_divisor = max(2, int(bounds.get("max_divisor", 10)))
    max_denominator = max(2, int(bounds.get("max_denominator", 8)))
    allow_negative = bool(bounds.get("allow_negative", False))
    like_denominators = bool(bounds.get("like_denominators", True))

    if category in ("addition", "comparison"):
        return [rng.randint(lo, hi), rng.randint(lo, hi)]
    if category == "subtraction":
        a, b = rng.randint(lo, hi), rng.randint(lo, hi)
        if not allow_negative and b > a:
            a, b = b, a
        return [a, b]
    if category == "multiplication":
        return [rng.randint(2, max_factor), rng.randint(2, max_factor)]
    if category == "division":
        divisor = rng.randint(2, max_divisor)
        quotient = rng.randint(1, max(1, hi // divisor))
        return [divisor * quotient, divisor]
    if category in ("fraction_addition", "fraction_subtraction"):
        d1 = rng.randint(2, max_denominator)
        d2 = d1 if like_denominators else rng.randint(2, max_denominator)
        first = (rng.randint(1, d1 - 1), d1)
        second = (rng.randint(1, d2 - 1), d2)
        if category == "fraction_subtraction" and not allow_negative and Fraction(*second) > Fraction(*first):
            first, second = second, first
        # Keep the unreduced written form so the learner still has to simplify.
        return [f"{first[0]}/{first[1]}", f"{second[0]}/{second[1]}"]
    if category == "pattern":
        step = rng.randint(1, max(1, min(max_factor, (hi - lo) // 4)))
        start = rng.randint(lo, max(lo, hi - 3 * step))
        return [start + step * k for k in range(4)]
    raise KeyError(f"Unknown item category: {category}")


def shift_operands(category: str, operands: Sequence[Any], step: int) -> List[Any]:
    """Deterministic neighbour of ``operands`` that keeps the item's shape.

    Distinct positive steps give distinct operand lists, results never turn
    negative, divisions stay exact and patterns keep their common difference.
    """

    if step < 1:
        raise ValueError("step must be a positive integer")
    values = list(operands)
    if category in ("addition", "subtraction"):
        return [coerce_number(values[0]) + step, coerce_number(values[1])]
    if category == "multiplication":
        return [coerce_number(values[0]), coerce_number(values[1]) + step]
    if category == "division":
        dividend, divisor = _ints(values)
        return [dividend + step * divisor, divisor]
    if category in ("fraction_addition", "fraction_subtraction"):
        first = parse_fraction(values[0])
        numerator, denominator = first.numerator, first.denominator
        if numerator < denominator:
            # n/d < (n+s)/(d+s) < 1 for proper fractions
            shifted = f"{numerator + step}/{denominator + step}"
        else:
            shifted = f"{numerator + step * denominator}/{denominator}"
        return [shifted, values[1]]
    if category == "pattern":
        return [coerce_number(term) + step for term in values]
    if category == "comparison":
        return [coerce_number(values[0]) + step, coerce_number(values[1]) + step]
    raise KeyError(f"Unknown item category: {category}")


__all__ = [
    "Answer",
    "AnswerType",
    "OPERATIONS",
    "OperationSpec",
    "PLACEHOLDER_ANSWERS",
    "SUPPORTED_CATEGORIES",
    "answers_match",
    "build_choices",
    "choice_key",
    "coerce_number",
    "format_answer",
    "get_operation",
    "is_placeholder",
    "is_supported_subject",
    "numeric_tokens",
    "parse_fraction",
    "resolve_category",
    "sample_operands",
    "shift_operands",
]
