"""Shared pipeline state and the uniform stage contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from engines.calibrator import CalibrationParams
    from schemas import CandidateItem, GenerationRequest, RetrievedExemplar, ValidationResult


class PipelinePhase(str, Enum):
    INIT = "init"
    RETRIEVE = "retrieve"
    CALIBRATE = "calibrate"
    GENERATE = "generate"
    VALIDATE = "validate"
    ENHANCE = "enhance"
    RETRY = "retry"
    FALLBACK = "fallback"
    DONE_ACCEPTED = "done_accepted"
    DONE_FALLBACK = "done_fallback"
    DONE_INVALID_REQUEST = "done_invalid_request"
    CANCELLED = "cancelled"


@dataclass
class PipelineState:
    """Per-item record passed by reference through every stage.

    Owned by exactly one pipeline. ``batch_accepted`` is the only shared
    reference and stages treat it as read-only.
    """

    index: int
    request: "GenerationRequest"
    category: str
    seed: int
    batch_accepted: List["CandidateItem"] = field(default_factory=list)
    phase: PipelinePhase = PipelinePhase.INIT
    attempt: int = 0
    retry_count: int = 0
    feedback: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    exemplars: List["RetrievedExemplar"] = field(default_factory=list)
    calibration: Optional["CalibrationParams"] = None
    candidate: Optional["CandidateItem"] = None
    validation: Optional["ValidationResult"] = None
    fallback_used: bool = False
    outcome: Optional[str] = None
    stage_timings_ms: Dict[str, float] = field(default_factory=dict)

    def record_issues(self, issues: List[str]) -> None:
        for issue in issues:
            if issue not in self.issues:
                self.issues.append(issue)

    def note(self, code: str) -> None:
        if code not in self.notes:
            self.notes.append(code)

    def add_timing(self, stage: str, elapsed_ms: float) -> None:
        self.stage_timings_ms[stage] = round(self.stage_timings_ms.get(stage, 0.0) + elapsed_ms, 3)


class Stage:
    """One pipeline step. ``run`` mutates and returns the state or raises."""

    name: str = "stage"

    async def run(self, state: PipelineState) -> PipelineState:
        raise NotImplementedError


__all__ = ["PipelinePhase", "PipelineState", "Stage"]
