"""Routing controller: the per-item state machine and batch aggregation.

Each requested item runs its own pipeline::

    INIT -> RETRIEVE -> CALIBRATE -> GENERATE -> VALIDATE
         -> ENHANCE -> DONE_ACCEPTED
         -> RETRY -> GENERATE
         -> FALLBACK -> DONE_FALLBACK

Pipelines run concurrently up to ``worker_pool_size``; inside a pipeline the
stages are strictly sequential. Recoverable errors never leave this module:
callers see ``InvalidRequest``, ``FallbackIntegrityFailure`` or a
``WorkflowResult``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError

from config import OrchestratorConfig
from engines.base import PipelinePhase, PipelineState, Stage
from engines.calibrator import Calibrator
from engines.enhancer import Enhancer
from engines.errors import (
    FallbackIntegrityFailure,
    GenerationDefect,
    InvalidRequest,
    RetriesExhausted,
    TransientInfrastructureError,
    ValidationFailure,
)
from engines.generator import Generator
from engines.metrics import MetricsCollector
from engines.operations import is_supported_subject, resolve_category
from engines.retrieval import ContextRetriever
from engines.validation import Validator, operand_signature
from item_bank import FallbackTemplate, FallbackTemplateBank
from schemas import CandidateItem, GenerationRequest, ItemMetrics, WorkflowResult

logger = logging.getLogger(__name__)

MIN_GRADE = 1
MAX_GRADE = 12

PersistCallback = Callable[[CandidateItem], Any]

_FIELD_ISSUES = {
    "grade_level": "invalid_grade",
    "difficulty": "unsupported_difficulty",
    "count": "invalid_count",
    "topic": "topic_missing",
    "subject": "invalid_subject",
    "persona": "invalid_persona",
}


def item_seed(request: GenerationRequest, index: int) -> int:
    """Stable seed for item ``index`` of ``request``."""

    digest = hashlib.sha256(f"{request.model_dump_json()}#{index}".encode("utf-8")).hexdigest()
    return int(digest[:12], 16)


class RoutingController:
    """Drive one pipeline per requested item and fold the outcomes together."""

    def __init__(
        self,
        config: OrchestratorConfig,
        retriever: ContextRetriever,
        calibrator: Calibrator,
        generator: Generator,
        validator: Validator,
        enhancer: Enhancer,
        fallback_bank: FallbackTemplateBank,
        *,
        persist: Optional[PersistCallback] = None,
        metrics_factory: Callable[[], MetricsCollector] = MetricsCollector,
    ) -> None:
        self.config = config
        self.retriever = retriever
        self.calibrator = calibrator
        self.generator = generator
        self.validator = validator
        self.enhancer = enhancer
        self.fallback_bank = fallback_bank
        self.persist = persist
        self.metrics_factory = metrics_factory

    # ------------------------------------------------------------------
    # INIT
    # ------------------------------------------------------------------
    def validate_request(self, request: Union[GenerationRequest, Mapping[str, Any]]) -> GenerationRequest:
        """Return a typed request or raise ``InvalidRequest`` listing every problem."""

        if not isinstance(request, GenerationRequest):
            try:
                request = GenerationRequest.model_validate(dict(request))
            except ValidationError as exc:
                issues: List[str] = []
                for error in exc.errors():
                    field = str(error["loc"][0]) if error.get("loc") else "request"
                    code = _FIELD_ISSUES.get(field, f"invalid_{field}")
                    if code not in issues:
                        issues.append(code)
                raise InvalidRequest(issues) from exc
            except (TypeError, ValueError) as exc:
                raise InvalidRequest(["malformed_request"], str(exc)) from exc

        issues = []
        if not MIN_GRADE <= request.grade_level <= MAX_GRADE:
            issues.append("grade_out_of_range")
        if request.count < 1:
            issues.append("count_too_small")
        elif request.count > self.config.max_batch_size:
            issues.append("count_too_large")
        if not is_supported_subject(request.subject):
            issues.append("unsupported_subject")
        if resolve_category(request.topic) is None:
            issues.append("unsupported_topic")
        if issues:
            raise InvalidRequest(issues)
        return request

    # ------------------------------------------------------------------
    # batch
    # ------------------------------------------------------------------
    async def generate_batch(
        self,
        request: Union[GenerationRequest, Mapping[str, Any]],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WorkflowResult:
        req = self.validate_request(request)
        category = resolve_category(req.topic)
        assert category is not None

        request_id = str(uuid4())
        cancel = cancel_event or asyncio.Event()
        metrics = self.metrics_factory()
        semaphore = asyncio.Semaphore(self.config.worker_pool_size)
        batch_accepted: List[CandidateItem] = []
        states = [
            PipelineState(
                index=index,
                request=req,
                category=category,
                seed=item_seed(req, index),
                batch_accepted=batch_accepted,
            )
            for index in range(req.count)
        ]
        logger.info(
            "Batch %s: %s x %s grade %s %s (workers=%s)",
            request_id,
            req.count,
            category,
            req.grade_level,
            req.difficulty,
            self.config.worker_pool_size,
        )

        tasks = [asyncio.create_task(self._run_item(state, semaphore, cancel, metrics)) for state in states]
        try:
            await asyncio.gather(*tasks)
        except Exception:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        items = [
            state.candidate
            for state in states
            if state.outcome in ("accepted", "fallback") and state.candidate is not None
        ]
        diagnostics: List[str] = []
        for state in states:
            codes = list(state.notes)
            if state.fallback_used:
                codes.append("retries_exhausted")
            if state.outcome == "cancelled":
                codes.append("cancelled")
            for code in codes:
                if code not in diagnostics:
                    diagnostics.append(code)

        cancelled = any(state.outcome == "cancelled" for state in states)
        summary = metrics.emit(
            request_id,
            {"category": category, "grade": req.grade_level, "difficulty": req.difficulty},
        )
        return WorkflowResult(
            items=items,
            per_item_metrics=metrics.records(),
            diagnostics=diagnostics,
            cancelled=cancelled,
            summary=summary,
        )

    async def _run_item(
        self,
        state: PipelineState,
        semaphore: asyncio.Semaphore,
        cancel: asyncio.Event,
        metrics: MetricsCollector,
    ) -> None:
        async with semaphore:
            await self._run_pipeline(state, cancel)
            if state.outcome in ("accepted", "fallback"):
                await self._persist(state)
        metrics.record(self._item_metrics(state))

    # ------------------------------------------------------------------
    # pipeline
    # ------------------------------------------------------------------
    async def _run_pipeline(self, state: PipelineState, cancel: asyncio.Event) -> None:
        if self._stop_if_cancelled(state, cancel):
            return
        await self._timed(state, self.retriever)
        if self._stop_if_cancelled(state, cancel):
            return
        await self._timed(state, self.calibrator)

        while True:
            if self._stop_if_cancelled(state, cancel):
                return

            backoff = False
            try:
                await self._timed(state, self.generator)
                if self._stop_if_cancelled(state, cancel):
                    return
                await self._validate(state)
            except GenerationDefect as exc:
                logger.info("Item %s attempt %s: generation defect %s", state.index, state.attempt, exc.issue_code)
                failure = [exc.issue_code]
                backoff = True
            except TransientInfrastructureError as exc:
                logger.warning("Item %s attempt %s: %s", state.index, state.attempt, exc.message)
                failure = ["transient_error"]
                backoff = True
            except ValidationFailure as exc:
                logger.info("Item %s attempt %s: %s", state.index, state.attempt, exc.message)
                failure = list(exc.issues)
            else:
                if self._stop_if_cancelled(state, cancel):
                    return
                await self._accept(state)
                return

            state.record_issues(failure)
            if state.retry_count >= self.config.max_retries:
                if self._stop_if_cancelled(state, cancel):
                    return
                await self._fallback(state, RetriesExhausted(state.index, state.attempt, state.issues))
                return

            state.retry_count += 1
            state.feedback = failure
            state.phase = PipelinePhase.RETRY
            if backoff:
                await self._backoff(state, cancel)

    async def _validate(self, state: PipelineState) -> None:
        await self._timed(state, self.validator)
        result = state.validation
        assert result is not None and state.candidate is not None
        if result.passed:
            return
        repaired = self.enhancer.repair(state.candidate) if result.repairable else None
        if repaired is None:
            raise ValidationFailure(result.issues)
        # Repaired candidates get one more validation without consuming a retry.
        logger.info("Item %s: reordered operands to avoid a negative result", state.index)
        state.candidate = repaired
        state.note("repaired_negative_result")
        await self._timed(state, self.validator)
        if not state.validation.passed:
            raise ValidationFailure(state.validation.issues)

    async def _accept(self, state: PipelineState) -> None:
        # No suspension between validation and this append, so the diversity
        # snapshot taken by the validator is still current.
        if self.config.enhancement_enabled:
            await self._timed(state, self.enhancer)
        assert state.candidate is not None
        state.batch_accepted.append(state.candidate)
        state.phase = PipelinePhase.DONE_ACCEPTED
        state.outcome = "accepted"

    async def _fallback(self, state: PipelineState, reason: RetriesExhausted) -> None:
        state.phase = PipelinePhase.FALLBACK
        logger.warning("%s; using fallback template (%s)", reason.message, ", ".join(reason.issues) or "no issues")
        started = time.perf_counter()
        try:
            candidate = self.select_fallback(state)
        finally:
            state.add_timing("fallback", (time.perf_counter() - started) * 1000.0)
        state.candidate = candidate
        state.validation = self.validator.validate(candidate, list(state.batch_accepted))
        state.fallback_used = True
        state.batch_accepted.append(candidate)
        state.phase = PipelinePhase.DONE_FALLBACK
        state.outcome = "fallback"

    def select_fallback(self, state: PipelineState) -> CandidateItem:
        """Pick a template whose operands are not already in the batch.

        Once every template of the cell is taken, the first template is
        shifted step by step until its operands are new. Each step yields
        distinct operands, so ``len(batch) + 1`` steps always find one.
        """

        difficulty = state.request.difficulty
        templates = self.fallback_bank.templates_for(state.category, difficulty)
        if not templates:
            raise FallbackIntegrityFailure(state.category, difficulty, ["no_template"])

        taken = {operand_signature(item) for item in state.batch_accepted}
        start = state.index % len(templates)
        ordered = templates[start:] + templates[:start]
        chosen = self._first_unused(state, ordered, taken)
        if chosen is None:
            variants = [self.fallback_bank.variant(ordered[0], step) for step in range(1, len(taken) + 2)]
            chosen = self._first_unused(state, variants, taken)
            state.note("fallback_variant")
        assert chosen is not None

        issues = self.validator.check_integrity(chosen)
        if issues:
            raise FallbackIntegrityFailure(state.category, difficulty, issues)
        return chosen

    def _first_unused(
        self, state: PipelineState, templates: Sequence[FallbackTemplate], taken: Set[Tuple[str, Tuple[str, ...]]]
    ) -> Optional[CandidateItem]:
        for template in templates:
            candidate = self.fallback_bank.to_candidate(template, state.request.grade_level, seed=state.seed)
            if operand_signature(candidate) not in taken:
                return candidate
        return None

    async def _backoff(self, state: PipelineState, cancel: asyncio.Event) -> None:
        delay = self.config.backoff_seconds(state.retry_count)
        if delay <= 0:
            return
        logger.info("Item %s: retry %s in %.2fs", state.index, state.retry_count, delay)
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _persist(self, state: PipelineState) -> None:
        if self.persist is None or state.candidate is None:
            return
        try:
            await asyncio.to_thread(self.persist, state.candidate)
        except Exception:
            logger.exception("Persisting item %s failed", state.index)
            state.note("persist_failed")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    async def _timed(state: PipelineState, stage: Stage) -> PipelineState:
        started = time.perf_counter()
        try:
            return await stage.run(state)
        finally:
            state.add_timing(stage.name, (time.perf_counter() - started) * 1000.0)

    @staticmethod
    def _stop_if_cancelled(state: PipelineState, cancel: asyncio.Event) -> bool:
        if not cancel.is_set():
            return False
        if state.outcome != "cancelled":
            logger.info("Item %s cancelled during %s", state.index, state.phase.value)
        state.phase = PipelinePhase.CANCELLED
        state.outcome = "cancelled"
        return True

    @staticmethod
    def _item_metrics(state: PipelineState) -> ItemMetrics:
        confidence = 0.0
        if state.validation is not None and state.outcome != "cancelled":
            confidence = state.validation.confidence
        return ItemMetrics(
            index=state.index,
            stage_timings_ms=dict(state.stage_timings_ms),
            retries_used=state.retry_count,
            fallback_used=state.fallback_used,
            confidence=confidence,
            outcome=state.outcome or "cancelled",
            issues=list(state.issues),
        )


def build_controller(
    config: OrchestratorConfig,
    *,
    backend: Any,
    store: Any = None,
    advisor: Any = None,
    fallback_bank: Optional[FallbackTemplateBank] = None,
    persist: Optional[PersistCallback] = None,
) -> RoutingController:
    """Wire the default stages around the given collaborators."""

    validator = Validator(config)
    return RoutingController(
        config,
        ContextRetriever(store, config),
        Calibrator(config, advisor=advisor),
        Generator(backend, config),
        validator,
        Enhancer(validator),
        fallback_bank if fallback_bank is not None else FallbackTemplateBank.from_config(config),
        persist=persist,
    )


__all__ = ["MAX_GRADE", "MIN_GRADE", "RoutingController", "build_controller", "item_seed"]
