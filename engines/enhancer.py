"""Enhancer stage: answer-preserving personalisation of item wording."""

from __future__ import annotations

import hashlib
import logging
import random
import re
from collections import Counter
from typing import Dict, Optional, Tuple

from engines.base import PipelinePhase, PipelineState, Stage
from engines.operations import build_choices, coerce_number, format_number, get_operation, numeric_tokens
from engines.validation import REPAIRABLE_CATEGORIES, Validator
from schemas import CandidateItem, Persona

logger = logging.getLogger(__name__)

STORY_GRADE_LIMIT = 3

CHARACTER_NAMES: Tuple[str, ...] = ("Emma", "Alex", "Maya", "Sam", "Zoe", "Jake")
CULTURAL_NAMES: Dict[str, Tuple[str, ...]] = {
    "new zealand": ("Aroha", "Nikau", "Mere", "Tane"),
}

INTEREST_OBJECTS: Dict[str, Tuple[str, ...]] = {
    "sports": ("footballs", "cones", "water bottles"),
    "animals": ("sheep", "bird stickers", "fish"),
    "music": ("guitar picks", "drums", "song cards"),
    "food": ("apples", "cookies", "sandwiches"),
    "space": ("rockets", "star stickers", "planet cards"),
    "art": ("crayons", "paintbrushes", "paper sheets"),
    "games": ("game cards", "marbles", "tokens"),
    "nature": ("shells", "leaves", "pine cones"),
}
DEFAULT_OBJECTS: Tuple[str, ...] = ("marbles", "stickers", "pencils")

CULTURAL_SUBSTITUTIONS: Dict[str, Dict[str, str]] = {
    "new zealand": {
        "apples": "kiwifruit",
        "footballs": "rugby balls",
        "football": "rugby",
        "cookies": "biscuits",
        "candy": "lollies",
        "school": "kura",
    },
}

LEARNING_STYLE_TIPS: Dict[str, str] = {
    "visual": "Tip: draw a picture or a number line to see the problem.",
    "auditory": "Tip: say each step out loud as you work it out.",
    "kinesthetic": "Tip: use counters or objects you can move to act it out.",
    "reading_writing": "Tip: write each step down before you check the answer.",
}

# {a} and {b} are the rendered operands; every template uses each exactly once.
STORY_TEMPLATES: Dict[str, Tuple[str, ...]] = {
    "addition": (
        "{name} has {a} {things} and finds {b} more. How many {things} does {name} have now?",
        "{name} collects {a} {things} in the morning and {b} in the afternoon. How many {things} is that altogether?",
    ),
    "subtraction": (
        "{name} has {a} {things} and gives away {b}. How many {things} are left?",
    ),
    "multiplication": (
        "{name} makes {a} groups with {b} {things} in each group. How many {things} are there altogether?",
    ),
    "division": (
        "{name} shares {a} {things} equally among {b} friends. How many {things} does each friend get?",
    ),
}
REAL_WORLD_TEMPLATES: Dict[str, Tuple[str, ...]] = {
    "addition": (
        "A club orders {a} {things} and then {b} more. How many {things} were ordered in total?",
    ),
    "subtraction": (
        "A shop had {a} {things} and sold {b} of them. How many {things} are left?",
    ),
    "multiplication": (
        "A team packs {a} boxes with {b} {things} in each box. How many {things} are packed?",
    ),
    "division": (
        "{a} {things} are packed equally into {b} boxes. How many {things} go in each box?",
    ),
}


def _normalize(tag: Optional[str]) -> str:
    return " ".join(str(tag or "").lower().replace("_", " ").split())


def _substitute(text: str, substitutions: Dict[str, str]) -> str:
    if not substitutions:
        return text
    pattern = re.compile(r"\b(" + "|".join(re.escape(k) for k in sorted(substitutions, key=len, reverse=True)) + r")\b")
    return pattern.sub(lambda match: substitutions[match.group(1)], text)


def _stable_seed(*parts: str) -> int:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return int(digest[:12], 16)


class Enhancer(Stage):
    """Rewrite question and explanation wording for one persona.

    Answer, operands and choices are never touched. Every rewrite is checked
    again and discarded when the structural/correctness subset fails or a
    numeric token changed.
    """

    name = "enhance"

    def __init__(self, validator: Validator) -> None:
        self.validator = validator

    # ------------------------------------------------------------------
    def _rewrite_question(self, candidate: CandidateItem, persona: Persona, rng: random.Random) -> str:
        grade = persona.grade or candidate.grade_level
        culture = _normalize(persona.cultural_context)
        names = CHARACTER_NAMES + CULTURAL_NAMES.get(culture, ())
        interests = [_normalize(tag) for tag in persona.interests if _normalize(tag) in INTEREST_OBJECTS]
        interest = rng.choice(interests) if interests else None
        things = rng.choice(INTEREST_OBJECTS[interest] if interest else DEFAULT_OBJECTS)
        name = rng.choice(names)

        templates = (STORY_TEMPLATES if grade <= STORY_GRADE_LIMIT else REAL_WORLD_TEMPLATES).get(candidate.category)
        if templates and self._story_friendly(candidate):
            a, b = (format_number(coerce_number(op)) for op in candidate.operands)
            text = rng.choice(templates).format(name=name, a=a, b=b, things=things)
        else:
            topic = interest or "everyday life"
            text = f"{name} is practising maths while thinking about {topic}. {candidate.question_text}"
        return _substitute(text, CULTURAL_SUBSTITUTIONS.get(culture, {}))

    @staticmethod
    def _story_friendly(candidate: CandidateItem) -> bool:
        try:
            values = [coerce_number(op) for op in candidate.operands]
            answer = coerce_number(candidate.answer)
        except ValueError:
            return False
        return all(isinstance(v, int) and v >= 0 for v in values) and answer >= 0

    @staticmethod
    def _rewrite_explanation(candidate: CandidateItem, persona: Persona) -> str:
        tip = LEARNING_STYLE_TIPS.get(_normalize(persona.learning_style).replace(" ", "_"))
        if not tip:
            return candidate.explanation
        return f"{candidate.explanation.rstrip()} {tip}"

    @staticmethod
    def _numbers_preserved(before: str, after: str, *, exact: bool) -> bool:
        old = Counter(numeric_tokens(before))
        new = Counter(numeric_tokens(after))
        if exact:
            return old == new
        return not (old - new)

    # ------------------------------------------------------------------
    def enhance(self, candidate: CandidateItem, persona: Optional[Persona]) -> CandidateItem:
        """Return a personalised copy of ``candidate`` or ``candidate`` itself."""

        if persona is None:
            return candidate
        rng = random.Random(
            _stable_seed(candidate.category, candidate.question_text, repr(candidate.operands), persona.model_dump_json())
        )
        enhanced = candidate.model_copy(
            update={
                "question_text": self._rewrite_question(candidate, persona, rng),
                "explanation": self._rewrite_explanation(candidate, persona),
                "enhanced": True,
            }
        )

        issues = self.validator.check_integrity(enhanced)
        if not self._numbers_preserved(candidate.question_text, enhanced.question_text, exact=True):
            issues.append("numeric_token_changed")
        if not self._numbers_preserved(candidate.explanation, enhanced.explanation, exact=False):
            issues.append("explanation_token_changed")
        if issues:
            logger.info("Discarding enhancement for %s item: %s", candidate.category, ", ".join(issues))
            return candidate
        return enhanced

    def repair(self, candidate: CandidateItem) -> Optional[CandidateItem]:
        """Reorder operands of a negative subtraction so the result is non-negative."""

        if candidate.category not in REPAIRABLE_CATEGORIES or len(candidate.operands) != 2:
            return None
        spec = get_operation(candidate.category)
        operands = list(reversed(candidate.operands))
        try:
            answer = spec.evaluate(operands)
            rng = random.Random(_stable_seed("repair", repr(operands)))
            choices = build_choices(candidate.category, operands, answer, rng)
        except (ValueError, ZeroDivisionError) as exc:
            logger.warning("Repair failed for %s item: %s", candidate.category, exc)
            return None
        return candidate.model_copy(
            update={
                "operands": operands,
                "answer": answer,
                "question_text": spec.render(operands),
                "explanation": spec.explain(operands, answer),
                "choices": choices,
            }
        )

    async def run(self, state: PipelineState) -> PipelineState:
        state.phase = PipelinePhase.ENHANCE
        if state.candidate is not None:
            state.candidate = self.enhance(state.candidate, state.request.persona)
        return state


__all__ = ["Enhancer", "LEARNING_STYLE_TIPS"]
