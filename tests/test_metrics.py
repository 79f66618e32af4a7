import json
import logging

import pytest

from engines.metrics import MetricsCollector, summarize
from schemas import ItemMetrics


def _records():
    return [
        ItemMetrics(index=2, stage_timings_ms={"generate": 12.5}, retries_used=3, fallback_used=True,
                    confidence=0.6, outcome="fallback"),
        ItemMetrics(index=0, stage_timings_ms={"generate": 10.0, "validate": 1.0}, confidence=1.0),
        ItemMetrics(index=1, stage_timings_ms={"generate": 7.5}, retries_used=1, confidence=0.8),
        ItemMetrics(index=3, outcome="cancelled"),
    ]


def test_summarize_counts_outcomes():
    summary = summarize(_records())
    assert summary["items"] == 4
    assert summary["accepted"] == 2
    assert summary["fallback"] == 1
    assert summary["cancelled"] == 1
    assert summary["fallback_rate"] == 0.25
    assert summary["mean_confidence"] == pytest.approx(0.8)
    assert summary["total_retries"] == 4
    assert summary["max_retries_used"] == 3
    assert summary["stage_totals_ms"] == {"generate": 30.0, "validate": 1.0}


def test_summarize_empty():
    summary = summarize([])
    assert summary["items"] == 0
    assert summary["fallback_rate"] == 0.0
    assert summary["mean_confidence"] == 0.0


def test_collector_orders_records_by_index():
    collector = MetricsCollector()
    for record in _records():
        collector.record(record)
    assert [record.index for record in collector.records()] == [0, 1, 2, 3]


def test_emit_logs_one_json_line(monkeypatch):
    captured = []
    logger = logging.getLogger("itemflow.metrics")
    monkeypatch.setattr(logger, "info", lambda message, *args: captured.append(message))

    collector = MetricsCollector()
    collector.record(_records()[1])
    payload = collector.emit("req-1", {"category": "addition"})

    assert payload["request_id"] == "req-1"
    assert payload["category"] == "addition"
    assert payload["items"] == 1
    assert json.loads(captured[0]) == payload
