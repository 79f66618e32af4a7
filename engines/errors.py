"""Error taxonomy for the item generation workflow.

Only ``InvalidRequest`` and ``FallbackIntegrityFailure`` ever reach callers
of ``RoutingController.generate_batch``. Every other error is resolved
inside the controller and shows up as retry/fallback metadata instead.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class ItemFlowError(Exception):
    """Base class for all workflow errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidRequest(ItemFlowError):
    """Raised before any stage runs when the request shape is unusable."""

    def __init__(self, issues: Sequence[str], message: Optional[str] = None) -> None:
        self.issues: List[str] = list(issues)
        super().__init__(
            message or f"Invalid generation request: {', '.join(self.issues)}",
            {"issues": self.issues},
        )


class GenerationDefect(ItemFlowError):
    """The generator could not produce a candidate with a usable answer."""

    def __init__(self, issue_code: str, reason: str = "") -> None:
        self.issue_code = issue_code
        self.reason = reason
        message = f"Generation defect ({issue_code})"
        if reason:
            message += f": {reason}"
        super().__init__(message, {"issue_code": issue_code, "reason": reason})


class ValidationFailure(ItemFlowError):
    """A candidate failed one or more validator checks."""

    def __init__(self, issues: Sequence[str]) -> None:
        self.issues: List[str] = list(issues)
        super().__init__(f"Validation failed: {', '.join(self.issues)}", {"issues": self.issues})


class TransientInfrastructureError(ItemFlowError):
    """Timeout or connection failure from an external collaborator."""

    def __init__(self, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(f"{stage} unavailable: {reason}", {"stage": stage, "reason": reason})


class RetriesExhausted(ItemFlowError):
    """Internal signal that moves a pipeline to the fallback template."""

    def __init__(self, index: int, attempts: int, issues: Sequence[str]) -> None:
        self.index = index
        self.attempts = attempts
        self.issues = list(issues)
        super().__init__(
            f"Item {index} exhausted retries after {attempts} attempts",
            {"index": index, "attempts": attempts, "issues": self.issues},
        )


class FallbackIntegrityFailure(ItemFlowError):
    """A static fallback template is missing or does not validate.

    This is a configuration bug and is surfaced to the caller as fatal.
    """

    def __init__(self, category: str, difficulty: str, issues: Sequence[str]) -> None:
        self.category = category
        self.difficulty = difficulty
        self.issues = list(issues)
        super().__init__(
            f"Fallback template for {category}/{difficulty} is unusable: {', '.join(self.issues)}",
            {"category": category, "difficulty": difficulty, "issues": self.issues},
        )


__all__ = [
    "ItemFlowError",
    "InvalidRequest",
    "GenerationDefect",
    "ValidationFailure",
    "TransientInfrastructureError",
    "RetriesExhausted",
    "FallbackIntegrityFailure",
]
