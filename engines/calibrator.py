"""Deterministic calibration of generation bounds from grade and difficulty."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional, Protocol, Tuple

from calibration_tables import CALIBRATION_TABLES, COMPLEXITY_LEVELS, CalibrationTables
from config import OrchestratorConfig
from engines.base import PipelinePhase, PipelineState, Stage
from engines.operations import resolve_category
from schemas import CalibrationAdvice, GenerationRequest, Persona, parse_json_safe

logger = logging.getLogger(__name__)

TABLE_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.8
ADVISED_CONFIDENCE = 0.95

_LOAD_LEVELS: Tuple[str, ...] = ("low", "medium", "high")
_EARLY_GRADE_EXCLUDED = ("double-digit", "borrowing", "carrying")


@dataclass(frozen=True)
class CalibrationParams:
    """Bounds handed to the generator and the appropriateness check."""

    grade: int
    difficulty: str
    category: str
    min_value: int
    max_value: int
    max_factor: int
    max_divisor: int
    max_denominator: int
    answer_cap: int
    complexity: str
    cognitive_load: str
    allowed_operations: Tuple[str, ...]
    allow_negative: bool
    like_denominators: bool
    confidence: float
    source: str = "table"

    def as_bounds(self) -> Dict[str, Any]:
        """Plain mapping used as backend parameters."""

        payload = asdict(self)
        payload["allowed_operations"] = list(self.allowed_operations)
        return payload


class CalibrationAdvisor(Protocol):
    def advise(self, params: CalibrationParams, persona: Optional[Persona]) -> CalibrationAdvice:
        raise NotImplementedError("CalibrationAdvisor implementations must define advise().")


class ModelCalibrationAdvisor:
    """Ask a completion backend to narrow the table range."""

    def __init__(self, backend: Any) -> None:
        self.backend = backend

    def advise(self, params: CalibrationParams, persona: Optional[Persona]) -> CalibrationAdvice:
        persona_text = persona.model_dump_json() if persona else "{}"
        prompt = (
            "You calibrate maths practice items for one learner.\n"
            f"Category: {params.category}; grade {params.grade}; difficulty {params.difficulty}.\n"
            f"Allowed operand range: {params.min_value}..{params.max_value}.\n"
            f"Learner profile: {persona_text}\n"
            "Reply with one JSON object with optional keys min_value, max_value and complexity "
            "(simple|moderate|complex). Only narrow the allowed range."
        )
        raw = self.backend.complete(prompt, {"purpose": "calibration", "temperature": 0.0})
        return parse_json_safe(raw, CalibrationAdvice)


def _shift(levels: Tuple[str, ...], current: str, steps: int) -> str:
    idx = levels.index(current) + steps
    return levels[max(0, min(len(levels) - 1, idx))]


class Calibrator(Stage):
    """Table-driven calibrator with an optional narrowing advisor."""

    name = "calibrate"

    def __init__(
        self,
        config: OrchestratorConfig,
        tables: CalibrationTables | None = None,
        advisor: CalibrationAdvisor | None = None,
    ) -> None:
        self.config = config
        self.tables = tables or CALIBRATION_TABLES
        self.advisor = advisor

    # ------------------------------------------------------------------
    # table derivation
    # ------------------------------------------------------------------
    def table_params(self, persona: Optional[Persona], request: GenerationRequest) -> CalibrationParams:
        grade = int(request.grade_level)
        difficulty = request.difficulty
        category = resolve_category(request.topic)
        if category is None:
            raise ValueError(f"Unsupported topic: {request.topic}")

        base = self.tables.grade_range(grade)
        limits = self.tables.limits
        max_value = max(base.min_value + 1, int(math.floor(base.max_value * self.tables.multiplier(difficulty))))

        complexity, load = self._complexity(grade, difficulty, category)
        if persona and self._is_strength(persona, category):
            complexity = _shift(COMPLEXITY_LEVELS, complexity, 1)

        return CalibrationParams(
            grade=grade,
            difficulty=difficulty,
            category=category,
            min_value=base.min_value,
            max_value=max_value,
            max_factor=max(2, min(limits["max_factor"], int(math.isqrt(base.max_value)))),
            max_divisor=max(2, min(limits["max_divisor"], base.max_value // 4)),
            max_denominator=max(2, min(limits["max_denominator"], grade + 4)),
            answer_cap=self.tables.answer_cap(grade),
            complexity=complexity,
            cognitive_load=load,
            allowed_operations=self._allowed_operations(grade, difficulty, category),
            allow_negative=grade >= self.config.negative_result_min_grade,
            like_denominators=difficulty != "hard",
            confidence=TABLE_CONFIDENCE,
            source="table",
        )

    def _complexity(self, grade: int, difficulty: str, category: str) -> Tuple[str, str]:
        complexity = self.tables.complexity(category)
        load = "medium"
        if grade <= 2:
            complexity, load = "simple", "low"
        elif grade >= 6:
            if complexity == "simple":
                complexity = "moderate"
        if difficulty == "hard":
            complexity = _shift(COMPLEXITY_LEVELS, complexity, 1)
            load = _shift(_LOAD_LEVELS, load, 1)
        elif difficulty == "easy":
            complexity = _shift(COMPLEXITY_LEVELS, complexity, -1)
            if load == "medium":
                load = "low"
        return complexity, load

    def _allowed_operations(self, grade: int, difficulty: str, category: str) -> Tuple[str, ...]:
        operations = list(self.tables.allowed_operations(category))
        if grade <= 2:
            operations = [op for op in operations if not any(tag in op for tag in _EARLY_GRADE_EXCLUDED)]
        if difficulty == "easy":
            operations = operations[:1]
        elif difficulty == "medium":
            operations = operations[:2]
        return tuple(operations) or ("basic",)

    @staticmethod
    def _is_strength(persona: Persona, category: str) -> bool:
        return any(resolve_category(strength) == category for strength in persona.strengths)

    # ------------------------------------------------------------------
    # public contract
    # ------------------------------------------------------------------
    def calibrate(self, persona: Optional[Persona], request: GenerationRequest) -> CalibrationParams:
        """Return bounds for ``request``; never raises for a supported topic."""

        params = self.table_params(persona, request)
        if self.advisor is None:
            return params
        try:
            advice = self.advisor.advise(params, persona)
        except Exception as exc:
            logger.warning("Calibration advisor failed for %s: %s", params.category, exc)
            return replace(params, confidence=FALLBACK_CONFIDENCE, source="table_fallback")
        return self._apply_advice(params, advice)

    def _apply_advice(self, params: CalibrationParams, advice: CalibrationAdvice) -> CalibrationParams:
        low = advice.min_value if advice.min_value is not None else params.min_value
        high = advice.max_value if advice.max_value is not None else params.max_value
        if not params.min_value <= low < high <= params.max_value:
            logger.info(
                "Rejected calibration advice %s..%s outside table range %s..%s",
                low,
                high,
                params.min_value,
                params.max_value,
            )
            return replace(params, confidence=FALLBACK_CONFIDENCE, source="table_fallback")
        complexity = params.complexity
        if advice.complexity is not None:
            if COMPLEXITY_LEVELS.index(advice.complexity) > COMPLEXITY_LEVELS.index(params.complexity):
                logger.info("Ignoring advised complexity %s above %s", advice.complexity, params.complexity)
            else:
                complexity = advice.complexity
        return replace(
            params,
            min_value=low,
            max_value=high,
            complexity=complexity,
            confidence=ADVISED_CONFIDENCE,
            source="advisor",
        )

    async def run(self, state: PipelineState) -> PipelineState:
        state.phase = PipelinePhase.CALIBRATE
        persona = state.request.persona
        if self.advisor is None:
            state.calibration = self.calibrate(persona, state.request)
            return state
        try:
            state.calibration = await asyncio.wait_for(
                asyncio.to_thread(self.calibrate, persona, state.request),
                timeout=self.config.per_stage_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Calibration advisor timed out for item %s; using table bounds", state.index)
            params = self.table_params(persona, state.request)
            state.calibration = replace(params, confidence=FALLBACK_CONFIDENCE, source="table_fallback")
            state.note("calibration_advisor_timeout")
        return state


__all__ = [
    "ADVISED_CONFIDENCE",
    "CalibrationAdvisor",
    "CalibrationParams",
    "Calibrator",
    "FALLBACK_CONFIDENCE",
    "ModelCalibrationAdvisor",
    "TABLE_CONFIDENCE",
]
