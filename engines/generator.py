"""Generator stage: one structured candidate per attempt."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from config import OrchestratorConfig
from engines.base import PipelinePhase, PipelineState, Stage
from engines.calibrator import CalibrationParams
from engines.errors import GenerationDefect, TransientInfrastructureError
from engines.operations import (
    COMPARISON_SYMBOLS,
    OPERATIONS,
    OperationSpec,
    build_choices,
    coerce_number,
    format_answer,
    get_operation,
    is_placeholder,
    parse_fraction,
    resolve_category,
)
from llm_backend import CompletionBackend, TransientError
from prompts.masterprompts import ItemPrompt, get_prompt
from schemas import CandidateItem, GeneratedItemPayload, RetrievedExemplar, parse_json_safe

logger = logging.getLogger(__name__)


def attempt_seed(item_seed: int, attempt: int) -> int:
    """Stable per-attempt seed so retries explore different items."""

    digest = hashlib.sha256(f"{item_seed}:{attempt}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def _dedupe(codes: Sequence[str]) -> List[str]:
    seen: List[str] = []
    for code in codes:
        if code not in seen:
            seen.append(code)
    return seen


class Generator(Stage):
    """Turn calibration bounds and exemplars into a ``CandidateItem``.

    Any backend reply that cannot yield a usable structured answer raises
    ``GenerationDefect``; a partially filled candidate is never returned.
    """

    name = "generate"

    def __init__(
        self,
        backend: CompletionBackend,
        config: OrchestratorConfig,
        *,
        prompt: ItemPrompt | None = None,
        temperature: float = 0.7,
    ) -> None:
        self.backend = backend
        self.config = config
        self.prompt = prompt or get_prompt("structured")
        self.temperature = temperature

    # ------------------------------------------------------------------
    # prompt
    # ------------------------------------------------------------------
    def render_prompt(
        self,
        calibration: CalibrationParams,
        exemplars: Sequence[RetrievedExemplar],
        feedback: Optional[Sequence[str]] = None,
    ) -> str:
        exemplar_lines = "\n".join(
            f"- {ex.text} (answer: {format_answer(ex.answer)})" for ex in exemplars
        ) or "(none)"
        return self.prompt.render(
            category=calibration.category,
            grade=calibration.grade,
            difficulty=calibration.difficulty,
            min_value=calibration.min_value,
            max_value=calibration.max_value,
            max_factor=calibration.max_factor,
            max_divisor=calibration.max_divisor,
            max_denominator=calibration.max_denominator,
            allowed_operations=", ".join(calibration.allowed_operations),
            complexity=calibration.complexity,
            allow_negative="yes" if calibration.allow_negative else "no",
            exemplars=exemplar_lines,
            feedback=self.prompt.corrections(_dedupe(feedback or [])),
        )

    def backend_params(
        self,
        calibration: CalibrationParams,
        feedback: Optional[Sequence[str]],
        seed: int,
    ) -> Dict[str, Any]:
        params = calibration.as_bounds()
        params.update(
            {
                "purpose": "generation",
                "system": self.prompt.system_template,
                "seed": seed,
                "temperature": self.temperature,
                "timeout_s": self.config.per_stage_timeout_s,
                "feedback": _dedupe(feedback or []),
            }
        )
        return params

    # ------------------------------------------------------------------
    # public contract
    # ------------------------------------------------------------------
    async def generate(
        self,
        calibration: CalibrationParams,
        exemplars: Sequence[RetrievedExemplar],
        feedback: Optional[Sequence[str]] = None,
        *,
        seed: int = 0,
    ) -> CandidateItem:
        if calibration.category not in OPERATIONS:
            raise GenerationDefect("unknown_category", calibration.category)
        prompt = self.render_prompt(calibration, exemplars, feedback)
        params = self.backend_params(calibration, feedback, seed)
        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self.backend.complete, prompt, params),
                timeout=self.config.per_stage_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise TransientInfrastructureError("generate", "timeout") from exc
        except TransientError as exc:
            raise TransientInfrastructureError("generate", str(exc)) from exc
        except Exception as exc:
            logger.warning("Generation backend failed: %s", exc)
            raise GenerationDefect("backend_error", str(exc)[:200]) from exc
        return self.build_candidate(raw, calibration, seed=seed)

    def build_candidate(self, raw: Any, calibration: CalibrationParams, *, seed: int = 0) -> CandidateItem:
        """Parse raw backend output into a candidate or raise ``GenerationDefect``."""

        try:
            payload = parse_json_safe(raw, GeneratedItemPayload)
        except (ValidationError, ValueError, TypeError) as exc:
            raise GenerationDefect("unparseable_output", str(exc)[:200]) from exc

        category = calibration.category
        if payload.category:
            claimed = payload.category.strip().lower()
            claimed = claimed if claimed in OPERATIONS else resolve_category(claimed)
            if claimed != category:
                raise GenerationDefect("unknown_category", f"expected {category}, got {payload.category}")
        spec = get_operation(category)

        operands = self._normalize_operands(spec, payload.operands)

        if payload.answer is None or (isinstance(payload.answer, str) and not payload.answer.strip()):
            raise GenerationDefect("answer_missing")
        if is_placeholder(payload.answer):
            raise GenerationDefect("answer_placeholder", str(payload.answer))
        answer = self._coerce_answer(spec, payload.answer)

        try:
            question_text = spec.render(operands)
        except (ValueError, ZeroDivisionError) as exc:
            raise GenerationDefect("operands_missing", str(exc)) from exc

        explanation = (payload.explanation or "").strip()
        if not explanation:
            try:
                explanation = spec.explain(operands, answer)
            except (ValueError, ZeroDivisionError):
                explanation = f"The answer is {format_answer(answer)}."

        rng = random.Random(seed)
        try:
            choices = build_choices(category, operands, answer, rng, allow_negative=calibration.allow_negative)
        except (ValueError, ZeroDivisionError):
            # Validation reports the unusable operands.
            choices = []

        try:
            return CandidateItem(
                category=category,
                operands=operands,
                answer=answer,
                answer_type=spec.answer_type,
                question_text=question_text,
                explanation=explanation,
                choices=choices,
                grade_level=calibration.grade,
                difficulty=calibration.difficulty,
            )
        except ValidationError as exc:
            raise GenerationDefect("answer_malformed", str(exc)[:200]) from exc

    @staticmethod
    def _normalize_operands(spec: OperationSpec, operands: Optional[List[Any]]) -> List[Any]:
        if not operands or not spec.accepts_arity(operands):
            raise GenerationDefect("operands_missing", f"{spec.category} expects {spec.min_operands} operands")
        normalized: List[Any] = []
        for value in operands:
            if value is None or isinstance(value, bool):
                raise GenerationDefect("operands_missing", "operand is null")
            try:
                if spec.answer_type == "string":
                    fraction = parse_fraction(value if not isinstance(value, float) else str(value))
                    normalized.append(value.strip() if isinstance(value, str) else str(fraction))
                else:
                    normalized.append(coerce_number(value))
            except (ValueError, ZeroDivisionError) as exc:
                raise GenerationDefect("operands_missing", f"bad operand {value!r}") from exc
        return normalized

    @staticmethod
    def _coerce_answer(spec: OperationSpec, value: Any) -> Any:
        try:
            if spec.answer_type == "numeric":
                return coerce_number(value)
            if spec.answer_type == "string":
                if isinstance(value, bool):
                    raise ValueError("boolean answer")
                return str(parse_fraction(str(value)))
        except (ValueError, ZeroDivisionError) as exc:
            raise GenerationDefect("answer_malformed", f"{value!r} is not a {spec.answer_type} answer") from exc
        symbol = str(value).strip()
        if symbol not in COMPARISON_SYMBOLS:
            raise GenerationDefect("answer_malformed", f"{value!r} is not a comparison symbol")
        return symbol

    async def run(self, state: PipelineState) -> PipelineState:
        state.phase = PipelinePhase.GENERATE
        state.attempt += 1
        if state.calibration is None:
            raise GenerationDefect("backend_error", "calibration missing")
        state.candidate = await self.generate(
            state.calibration,
            state.exemplars,
            state.feedback or None,
            seed=attempt_seed(state.seed, state.attempt),
        )
        return state


__all__ = ["Generator", "attempt_seed"]
