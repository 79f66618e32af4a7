"""Orchestrator configuration built once at startup."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from env_validation import get_env_bool

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when an orchestrator setting is out of range."""


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", env_name, raw, default)
        return default


def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", env_name, raw, default)
        return default


def load_fallback_mapping(path: str | Path) -> Dict[str, List[Dict[str, Any]]]:
    """Read a templates file and group its entries by category."""

    file_path = Path(path)
    if not file_path.exists():
        raise ConfigError(f"Fallback templates file not found: {file_path}")
    with file_path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if isinstance(raw, dict):
        raw = raw.get("templates", raw)
    if isinstance(raw, dict):
        return {str(key): list(value) for key, value in raw.items()}
    if not isinstance(raw, list):
        raise ConfigError("Fallback templates file must contain a JSON list or object")
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in raw:
        if not isinstance(entry, dict) or "category" not in entry:
            raise ConfigError("Each fallback template must be an object with a 'category'")
        grouped.setdefault(str(entry["category"]), []).append(entry)
    return grouped


@dataclass(frozen=True)
class OrchestratorConfig:
    """Explicit settings passed to the controller and every stage.

    Stage code reads these values only; nothing below the controller touches
    ``os.environ``.
    """

    max_retries: int = 3
    worker_pool_size: int = 4
    per_stage_timeout_ms: int = 10_000
    enhancement_enabled: bool = True
    fallback_templates_by_category: Optional[Mapping[str, List[Dict[str, Any]]]] = field(
        default=None, compare=False, repr=False
    )
    retrieval_k: int = 3
    backoff_base_ms: int = 200
    backoff_max_ms: int = 2_000
    min_diversity: float = 0.25
    max_batch_size: int = 50
    negative_result_min_grade: int = 6
    min_text_chars: int = 10
    max_text_chars: int = 400
    max_text_words: int = 60

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.worker_pool_size < 1:
            raise ConfigError("worker_pool_size must be >= 1")
        if self.per_stage_timeout_ms <= 0:
            raise ConfigError("per_stage_timeout_ms must be positive")
        if self.backoff_base_ms < 0 or self.backoff_max_ms < 0:
            raise ConfigError("backoff delays may not be negative")
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ConfigError("backoff_max_ms must be >= backoff_base_ms")
        if not 0.0 <= self.min_diversity <= 1.0:
            raise ConfigError("min_diversity must be within [0, 1]")
        if self.max_batch_size < 1:
            raise ConfigError("max_batch_size must be >= 1")
        if not 1 <= self.negative_result_min_grade <= 13:
            raise ConfigError("negative_result_min_grade must be within [1, 13]")
        if self.min_text_chars < 1 or self.max_text_chars < self.min_text_chars:
            raise ConfigError("text length bounds are inconsistent")
        if self.max_text_words < 1:
            raise ConfigError("max_text_words must be >= 1")
        # Clamp rather than reject: k is advisory.
        object.__setattr__(self, "retrieval_k", max(1, min(10, int(self.retrieval_k))))

    # ------------------------------------------------------------------
    @property
    def per_stage_timeout_s(self) -> float:
        return self.per_stage_timeout_ms / 1000.0

    def backoff_seconds(self, retry_count: int) -> float:
        """Exponential delay before retry number ``retry_count`` (1-based)."""

        if retry_count <= 0 or self.backoff_base_ms == 0:
            return 0.0
        delay_ms = min(self.backoff_max_ms, self.backoff_base_ms * (2 ** (retry_count - 1)))
        return delay_ms / 1000.0

    def with_overrides(self, **changes: Any) -> "OrchestratorConfig":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Build the configuration from ``ITEMFLOW_*`` environment variables."""

        templates_path = os.getenv("ITEMFLOW_FALLBACK_TEMPLATES")
        fallback = load_fallback_mapping(templates_path) if templates_path else None
        return cls(
            max_retries=_safe_int("ITEMFLOW_MAX_RETRIES", 3),
            worker_pool_size=_safe_int("ITEMFLOW_WORKERS", 4),
            per_stage_timeout_ms=_safe_int("ITEMFLOW_STAGE_TIMEOUT_MS", 10_000),
            enhancement_enabled=get_env_bool("ITEMFLOW_ENHANCE", True),
            fallback_templates_by_category=fallback,
            retrieval_k=_safe_int("ITEMFLOW_RETRIEVAL_K", 3),
            backoff_base_ms=_safe_int("ITEMFLOW_BACKOFF_BASE_MS", 200),
            backoff_max_ms=_safe_int("ITEMFLOW_BACKOFF_MAX_MS", 2_000),
            min_diversity=_safe_float("ITEMFLOW_MIN_DIVERSITY", 0.25),
            max_batch_size=_safe_int("ITEMFLOW_MAX_BATCH", 50),
        )


__all__ = ["ConfigError", "OrchestratorConfig", "load_fallback_mapping"]
