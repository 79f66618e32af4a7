"""Calibration table loader."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

from engines.operations import SUPPORTED_CATEGORIES

COMPLEXITY_LEVELS: Tuple[str, ...] = ("simple", "moderate", "complex")
DIFFICULTIES: Tuple[str, ...] = ("easy", "medium", "hard")


class CalibrationConfigError(ValueError):
    """Raised when ``calibration_tables.json`` contains invalid data."""


@dataclass(frozen=True)
class GradeRange:
    """Base operand range for one grade before the difficulty multiplier."""

    grade: int
    min_value: int
    max_value: int


class CalibrationTables:
    """Load grade ranges, multipliers and caps from ``calibration_tables.json``."""

    def __init__(self, path: str | Path | None = None) -> None:
        base_path = Path(__file__).resolve().parent / "engines" / "data"
        self.path = Path(path) if path is not None else base_path / "calibration_tables.json"
        self._ranges: Dict[int, GradeRange] = {}
        self._multipliers: Dict[str, float] = {}
        self._limits: Dict[str, int] = {}
        self._answer_caps: List[Tuple[int, int]] = []
        self._complexity: Dict[str, str] = {}
        self._allowed_operations: Dict[str, Tuple[str, ...]] = {}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Reload the tables from disk and validate the structure."""

        if not self.path.exists():
            raise FileNotFoundError(f"Calibration tables file not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, dict):
            raise CalibrationConfigError("Calibration tables file must contain a JSON object")

        self._ranges = self._parse_ranges(raw.get("grade_ranges"))
        self._multipliers = self._parse_multipliers(raw.get("difficulty_multipliers"))
        self._limits = self._parse_limits(raw.get("limits"))
        self._answer_caps = self._parse_caps(raw.get("answer_caps"))
        self._complexity = self._parse_complexity(raw.get("category_complexity"))
        self._allowed_operations = self._parse_operations(raw.get("allowed_operations"))

    @staticmethod
    def _parse_ranges(raw: object) -> Dict[int, GradeRange]:
        if not isinstance(raw, dict) or not raw:
            raise CalibrationConfigError("'grade_ranges' must be a non-empty object")
        ranges: Dict[int, GradeRange] = {}
        for key, entry in raw.items():
            try:
                grade = int(key)
            except (TypeError, ValueError) as exc:
                raise CalibrationConfigError(f"Grade key {key!r} is not an integer") from exc
            if not isinstance(entry, dict):
                raise CalibrationConfigError(f"Grade {grade} range must be an object")
            try:
                low = int(entry["min"])
                high = int(entry["max"])
            except (KeyError, TypeError, ValueError) as exc:
                raise CalibrationConfigError(f"Grade {grade} range needs integer 'min' and 'max'") from exc
            if low < 0 or high <= low:
                raise CalibrationConfigError(f"Grade {grade} range must satisfy 0 <= min < max")
            ranges[grade] = GradeRange(grade, low, high)
        if 1 not in ranges:
            raise CalibrationConfigError("'grade_ranges' must define grade 1")
        return ranges

    @staticmethod
    def _parse_multipliers(raw: object) -> Dict[str, float]:
        if not isinstance(raw, dict):
            raise CalibrationConfigError("'difficulty_multipliers' must be an object")
        multipliers: Dict[str, float] = {}
        for difficulty in DIFFICULTIES:
            if difficulty not in raw:
                raise CalibrationConfigError(f"Missing difficulty multiplier for '{difficulty}'")
            try:
                value = float(raw[difficulty])
            except (TypeError, ValueError) as exc:
                raise CalibrationConfigError(f"Multiplier for '{difficulty}' must be numeric") from exc
            if not 0.0 < value <= 1.0:
                raise CalibrationConfigError(f"Multiplier for '{difficulty}' must be within (0, 1]")
            multipliers[difficulty] = value
        if not multipliers["easy"] <= multipliers["medium"] <= multipliers["hard"]:
            raise CalibrationConfigError("Difficulty multipliers must increase from easy to hard")
        return multipliers

    @staticmethod
    def _parse_limits(raw: object) -> Dict[str, int]:
        if not isinstance(raw, dict):
            raise CalibrationConfigError("'limits' must be an object")
        limits: Dict[str, int] = {}
        for name in ("max_factor", "max_divisor", "max_denominator"):
            try:
                value = int(raw[name])
            except (KeyError, TypeError, ValueError) as exc:
                raise CalibrationConfigError(f"'limits.{name}' must be an integer") from exc
            if value < 2:
                raise CalibrationConfigError(f"'limits.{name}' must be at least 2")
            limits[name] = value
        return limits

    @staticmethod
    def _parse_caps(raw: object) -> List[Tuple[int, int]]:
        if not isinstance(raw, list) or not raw:
            raise CalibrationConfigError("'answer_caps' must be a non-empty list")
        caps: List[Tuple[int, int]] = []
        for idx, entry in enumerate(raw, start=1):
            try:
                caps.append((int(entry["max_grade"]), int(entry["cap"])))
            except (KeyError, TypeError, ValueError) as exc:
                raise CalibrationConfigError(f"Answer cap #{idx} needs integer 'max_grade' and 'cap'") from exc
        caps.sort()
        if caps[-1][0] < 12:
            raise CalibrationConfigError("'answer_caps' must cover grades up to 12")
        return caps

    @staticmethod
    def _parse_complexity(raw: object) -> Dict[str, str]:
        if not isinstance(raw, dict):
            raise CalibrationConfigError("'category_complexity' must be an object")
        complexity: Dict[str, str] = {}
        for category in SUPPORTED_CATEGORIES:
            value = raw.get(category, "moderate")
            if value not in COMPLEXITY_LEVELS:
                raise CalibrationConfigError(f"Unknown complexity '{value}' for {category}")
            complexity[category] = value
        return complexity

    @staticmethod
    def _parse_operations(raw: object) -> Dict[str, Tuple[str, ...]]:
        if not isinstance(raw, dict):
            raise CalibrationConfigError("'allowed_operations' must be an object")
        operations: Dict[str, Tuple[str, ...]] = {}
        for category in SUPPORTED_CATEGORIES:
            values = raw.get(category) or ["basic"]
            if not isinstance(values, list) or not all(isinstance(v, str) and v for v in values):
                raise CalibrationConfigError(f"'allowed_operations.{category}' must be a list of strings")
            operations[category] = tuple(values)
        return operations

    # ------------------------------------------------------------------
    def grade_range(self, grade: int) -> GradeRange:
        """Return the range for ``grade``, reusing the nearest lower grade."""

        known = [g for g in self._ranges if g <= grade]
        if not known:
            return self._ranges[min(self._ranges)]
        return self._ranges[max(known)]

    def multiplier(self, difficulty: str) -> float:
        try:
            return self._multipliers[difficulty]
        except KeyError:
            raise ValueError(f"Unknown difficulty: {difficulty}") from None

    def answer_cap(self, grade: int) -> int:
        for max_grade, cap in self._answer_caps:
            if grade <= max_grade:
                return cap
        return self._answer_caps[-1][1]

    def complexity(self, category: str) -> str:
        return self._complexity.get(category, "moderate")

    def allowed_operations(self, category: str) -> Tuple[str, ...]:
        return self._allowed_operations.get(category, ("basic",))

    @property
    def limits(self) -> Mapping[str, int]:
        return dict(self._limits)


CALIBRATION_TABLES = CalibrationTables()
"""Singleton tables used when no explicit path is configured."""

__all__ = ["CALIBRATION_TABLES", "CalibrationConfigError", "CalibrationTables", "GradeRange"]
