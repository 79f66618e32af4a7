"""Per-item metric records and the batch summary."""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from typing import Any, Dict, List, Sequence

from schemas import ItemMetrics

logger = logging.getLogger(__name__)

_METRICS_LOGGER = logging.getLogger("itemflow.metrics")
if not _METRICS_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _METRICS_LOGGER.addHandler(_handler)
_METRICS_LOGGER.setLevel(logging.INFO)
_METRICS_LOGGER.propagate = False


def summarize(records: Sequence[ItemMetrics]) -> Dict[str, Any]:
    """Reduce finished item records to batch-level counters."""

    total = len(records)
    outcomes = Counter(record.outcome for record in records)
    finished = [record for record in records if record.outcome != "cancelled"]
    retries = [record.retries_used for record in records]
    stage_totals: Dict[str, float] = {}
    for record in records:
        for stage, elapsed in record.stage_timings_ms.items():
            stage_totals[stage] = round(stage_totals.get(stage, 0.0) + elapsed, 3)

    mean_confidence = (
        round(sum(record.confidence for record in finished) / len(finished), 4) if finished else 0.0
    )
    return {
        "items": total,
        "accepted": outcomes.get("accepted", 0),
        "fallback": outcomes.get("fallback", 0),
        "cancelled": outcomes.get("cancelled", 0),
        "fallback_rate": round(outcomes.get("fallback", 0) / total, 4) if total else 0.0,
        "mean_confidence": mean_confidence,
        "total_retries": sum(retries),
        "max_retries_used": max(retries) if retries else 0,
        "stage_totals_ms": stage_totals,
    }


class MetricsCollector:
    """Collects one immutable record per finished pipeline.

    Pipelines only append; ``summary`` reduces after the batch settles.
    """

    def __init__(self) -> None:
        self._records: List[ItemMetrics] = []
        self._lock = threading.Lock()

    def record(self, metrics: ItemMetrics) -> None:
        with self._lock:
            self._records.append(metrics)

    def records(self) -> List[ItemMetrics]:
        with self._lock:
            return sorted(self._records, key=lambda record: record.index)

    def summary(self) -> Dict[str, Any]:
        return summarize(self.records())

    def emit(self, request_id: str, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """Log the batch summary as one JSON line and return it."""

        payload: Dict[str, Any] = {"request_id": request_id, **self.summary()}
        if extra:
            payload.update(extra)
        try:
            _METRICS_LOGGER.info(json.dumps(payload, ensure_ascii=False, sort_keys=True))
        except (TypeError, ValueError):
            _METRICS_LOGGER.info(payload)
        return payload


__all__ = ["MetricsCollector", "summarize"]
