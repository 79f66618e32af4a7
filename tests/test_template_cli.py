import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts import validate_fallback_templates


def _write(tmp_path: Path, payload) -> str:
    path = tmp_path / "templates.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_bundled_templates_pass(capsys, monkeypatch):
    monkeypatch.delenv("FALLBACK_MIN_PER_CELL", raising=False)
    exit_code = validate_fallback_templates.main([])
    captured = capsys.readouterr()
    assert exit_code == 0
    lines = captured.out.strip().splitlines()
    assert lines[0].startswith("Templates checked: 72 (72 valid)")
    assert lines[1] == "Coverage (easy/medium/hard):"
    assert "  multiplication: 3/3/3" in lines


def test_coverage_threshold_failure(capsys, monkeypatch):
    monkeypatch.delenv("FALLBACK_MIN_PER_CELL", raising=False)
    exit_code = validate_fallback_templates.main(["--min-per-cell", "4"])
    captured = capsys.readouterr()
    assert exit_code == 1
    assert "Coverage gap: addition/easy has 3 template(s), needs 4." in captured.err


def test_env_minimum_overrides_flag(capsys, monkeypatch):
    monkeypatch.setenv("FALLBACK_MIN_PER_CELL", "0")
    exit_code = validate_fallback_templates.main(["--min-per-cell", "9"])
    assert exit_code == 0

    monkeypatch.setenv("FALLBACK_MIN_PER_CELL", "-1")
    assert validate_fallback_templates.main([]) == 1
    assert "non-negative integer" in capsys.readouterr().err


def test_broken_templates_are_reported(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("FALLBACK_MIN_PER_CELL", raising=False)
    path = _write(
        tmp_path,
        {
            "addition": [
                {"id": "a1", "difficulty": "easy", "operands": [2, 3], "answer": 5},
                {"id": "a2", "difficulty": "easy", "operands": [2, 3], "answer": 6},
                {"id": "a1", "difficulty": "medium", "operands": [4, 3], "answer": 7},
            ]
        },
    )
    output = tmp_path / "report.json"
    exit_code = validate_fallback_templates.main(["--templates", path, "--min-per-cell", "0", "--output", str(output)])
    captured = capsys.readouterr()

    assert exit_code == 1
    assert "Template a2 answer 6 does not match operands" in captured.err
    assert "Duplicate template id detected: a1" in captured.err
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["total_entries"] == 3
    assert report["valid_templates"] == 1
    assert report["coverage"]["addition"] == {"easy": 1, "medium": 0, "hard": 0}


def test_missing_file(tmp_path, capsys):
    exit_code = validate_fallback_templates.main(["--templates", str(tmp_path / "nope.json")])
    assert exit_code == 1
    assert "not found" in capsys.readouterr().err


def test_audit_flags_integrity_failures():
    entries = [
        {
            "id": "m1",
            "category": "multiplication",
            "difficulty": "easy",
            "operands": [2, 3],
            "answer": 6,
            "question_text": "2×3",
        }
    ]
    report = validate_fallback_templates.audit(entries, min_per_cell=0)
    assert report["failures"] == ["Template m1 fails integrity check: text_too_short"]
