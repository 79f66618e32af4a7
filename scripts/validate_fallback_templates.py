"""Offline audit of fallback templates: integrity checks plus category/difficulty coverage."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import OrchestratorConfig
from engines.validation import Validator
from item_bank import DEFAULT_TEMPLATES_PATH, FallbackTemplateBank, ItemValidationError
from schemas import DIFFICULTY_ORDER

MIN_PER_CELL_ENV_VAR = "FALLBACK_MIN_PER_CELL"
AUDIT_GRADE = 6


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--templates",
        type=str,
        default=str(DEFAULT_TEMPLATES_PATH),
        help="Path to the fallback templates JSON file (default: bundled fallback_templates.json)",
    )
    parser.add_argument(
        "--min-per-cell",
        type=int,
        default=1,
        help="Minimum number of templates required per category and difficulty",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    return parser


def _write_output(report: dict, output_path: str | None) -> None:
    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if output_path:
        Path(output_path).write_text(payload + "\n", encoding="utf-8")
    print(payload)


def _parse_env_minimum(name: str) -> int | None:
    value = (os.environ.get(name) or "").strip()
    if not value:
        return None
    try:
        minimum = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}.") from exc
    if minimum < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {minimum}.")
    return minimum


def _load_entries(path: Path) -> List[Any]:
    with path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if isinstance(raw, dict):
        raw = raw.get("templates", raw)
    if isinstance(raw, dict):
        entries: List[Any] = []
        for category, templates in raw.items():
            for entry in templates or []:
                if isinstance(entry, dict):
                    entry = {"category": category, **entry}
                entries.append(entry)
        return entries
    if not isinstance(raw, list):
        raise ItemValidationError("Fallback templates root must be a JSON list or object")
    return raw


def audit(entries: Sequence[Any], *, min_per_cell: int) -> Dict[str, Any]:
    """Check every entry and report coverage; ``failures`` empty means clean."""

    failures: List[str] = []
    valid: List[Dict[str, Any]] = []
    seen_ids: set[str] = set()
    for entry in entries:
        issues = FallbackTemplateBank.entry_issues(entry)
        if not issues and str(entry["id"]) in seen_ids:
            issues = [f"Duplicate template id detected: {entry['id']}"]
        if issues:
            failures.extend(issues)
            continue
        seen_ids.add(str(entry["id"]))
        valid.append(entry)

    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in valid:
        grouped.setdefault(str(entry["category"]), []).append(entry)
    bank = FallbackTemplateBank.from_mapping(grouped)

    validator = Validator(OrchestratorConfig())
    for template in bank.templates:
        candidate = bank.to_candidate(template, AUDIT_GRADE)
        for issue in validator.check_integrity(candidate):
            failures.append(f"Template {template.id} fails integrity check: {issue}")

    coverage = bank.coverage()
    for category, counts in coverage.items():
        for difficulty in DIFFICULTY_ORDER:
            if counts[difficulty] < min_per_cell:
                failures.append(
                    f"Coverage gap: {category}/{difficulty} has {counts[difficulty]} template(s), "
                    f"needs {min_per_cell}."
                )

    return {
        "total_entries": len(entries),
        "valid_templates": len(bank.templates),
        "min_per_cell": min_per_cell,
        "coverage": coverage,
        "failures": failures,
    }


def _print_coverage(coverage: Dict[str, Dict[str, int]]) -> None:
    print("Coverage (easy/medium/hard):")
    for category, counts in coverage.items():
        cells = "/".join(str(counts[difficulty]) for difficulty in DIFFICULTY_ORDER)
        print(f"  {category}: {cells}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        env_minimum = _parse_env_minimum(MIN_PER_CELL_ENV_VAR)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    min_per_cell = env_minimum if env_minimum is not None else args.min_per_cell

    path = Path(args.templates)
    if not path.exists():
        print(f"Fallback templates file not found: {path}", file=sys.stderr)
        return 1
    try:
        entries = _load_entries(path)
    except (ValueError, ItemValidationError) as exc:
        print(f"Could not read {path}: {exc}", file=sys.stderr)
        return 1

    report = audit(entries, min_per_cell=min_per_cell)
    for message in report["failures"]:
        print(message, file=sys.stderr)

    print(f"Templates checked: {report['total_entries']} ({report['valid_templates']} valid)")
    _print_coverage(report["coverage"])
    _write_output(report, args.output)
    return 1 if report["failures"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
