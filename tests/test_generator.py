"""Generator stage tests: structured parsing and the defect taxonomy."""

import json
import unittest

import pytest

from config import OrchestratorConfig
from engines.base import PipelineState
from engines.calibrator import Calibrator
from engines.errors import GenerationDefect, TransientInfrastructureError
from engines.generator import Generator, attempt_seed
from engines.operations import choice_key, is_placeholder
from llm_backend import OfflineCompletionBackend, TransientError
from schemas import GenerationRequest, RetrievedExemplar

from conftest import ScriptedBackend


def _calibration(topic="multiplication", grade=5, difficulty="medium"):
    request = GenerationRequest(topic=topic, grade_level=grade, difficulty=difficulty)
    return Calibrator(OrchestratorConfig()).calibrate(None, request)


def _generator(backend, **config):
    return Generator(backend, OrchestratorConfig(**config))


def test_build_candidate_from_structured_payload():
    generator = _generator(ScriptedBackend())
    raw = json.dumps(
        {"category": "multiplication", "operands": [6, 7], "answer": 42, "question": "ignored text"}
    )
    candidate = generator.build_candidate(raw, _calibration(), seed=4)

    assert candidate.answer == 42
    assert candidate.operands == [6, 7]
    assert candidate.question_text == "What is 6 × 7?"
    assert "42" in candidate.explanation
    keys = [choice_key(choice) for choice in candidate.choices]
    assert "42" in keys and len(keys) == len(set(keys)) == 4
    assert candidate.source == "generated"


def test_fraction_answers_are_reduced_strings():
    generator = _generator(ScriptedBackend())
    raw = json.dumps({"operands": ["2/8", "2/8"], "answer": "4/8", "explanation": "Add the quarters."})
    candidate = generator.build_candidate(raw, _calibration("fractions"), seed=1)
    assert candidate.answer == "1/2"
    assert candidate.answer_type == "string"
    assert candidate.explanation == "Add the quarters."


def test_comparison_answer_must_be_symbol():
    generator = _generator(ScriptedBackend())
    ok = generator.build_candidate(
        json.dumps({"operands": [3, 8], "answer": "<"}), _calibration("comparison"), seed=1
    )
    assert ok.answer == "<"
    with pytest.raises(GenerationDefect) as excinfo:
        generator.build_candidate(json.dumps({"operands": [3, 8], "answer": "less"}), _calibration("comparison"))
    assert excinfo.value.issue_code == "answer_malformed"


@pytest.mark.parametrize(
    "raw, code",
    [
        (json.dumps({"operands": [6, 7], "answer": "Option A"}), "answer_placeholder"),
        (json.dumps({"operands": [6, 7], "answer": "sample correct answer"}), "answer_placeholder"),
        (json.dumps({"operands": [6, 7]}), "answer_missing"),
        (json.dumps({"operands": [6, 7], "answer": "  "}), "answer_missing"),
        (json.dumps({"operands": [6, 7], "answer": "forty-two"}), "answer_malformed"),
        (json.dumps({"operands": [6], "answer": 42}), "operands_missing"),
        (json.dumps({"operands": [6, None], "answer": 42}), "operands_missing"),
        (json.dumps({"answer": 42}), "operands_missing"),
        (json.dumps({"category": "division", "operands": [6, 7], "answer": 42}), "unknown_category"),
        ("Sure! Here is a question: what is 6 x 7?", "unparseable_output"),
    ],
)
def test_defects_are_raised_not_returned(raw, code):
    generator = _generator(ScriptedBackend())
    with pytest.raises(GenerationDefect) as excinfo:
        generator.build_candidate(raw, _calibration())
    assert excinfo.value.issue_code == code


def test_wrong_but_well_formed_answer_is_left_for_validation():
    generator = _generator(ScriptedBackend())
    candidate = generator.build_candidate(json.dumps({"operands": [6, 7], "answer": 41}), _calibration())
    assert candidate.answer == 41
    assert not is_placeholder(candidate.answer)


def test_prompt_carries_bounds_exemplars_and_feedback():
    generator = _generator(ScriptedBackend())
    exemplars = [RetrievedExemplar(text="What is 3 × 9?", answer=27, score=0.8)]
    prompt = generator.render_prompt(_calibration(), exemplars, ["answer_missing", "answer_missing", "mystery"])

    assert "grade 5" in prompt
    assert "between 1 and 150" in prompt
    assert "What is 3 × 9? (answer: 27)" in prompt
    assert prompt.count('The "answer" field is mandatory') == 1
    assert "Fix the problem with your previous reply." in prompt
    assert generator.prompt.json_instructions in prompt


def test_attempt_seed_changes_per_attempt():
    assert attempt_seed(99, 1) != attempt_seed(99, 2)
    assert attempt_seed(99, 1) == attempt_seed(99, 1)


class GeneratorBackendTests(unittest.IsolatedAsyncioTestCase):
    async def test_transient_backend_error_is_infrastructure_error(self):
        generator = _generator(ScriptedBackend([TransientError("HTTP 503")]))
        with self.assertRaises(TransientInfrastructureError) as ctx:
            await generator.generate(_calibration(), [])
        self.assertEqual(ctx.exception.stage, "generate")

    async def test_other_backend_errors_are_defects(self):
        generator = _generator(ScriptedBackend([RuntimeError("boom")]))
        with self.assertRaises(GenerationDefect) as ctx:
            await generator.generate(_calibration(), [])
        self.assertEqual(ctx.exception.issue_code, "backend_error")

    async def test_slow_backend_times_out(self):
        generator = _generator(ScriptedBackend(delay=0.3), per_stage_timeout_ms=50)
        with self.assertRaises(TransientInfrastructureError) as ctx:
            await generator.generate(_calibration(), [])
        self.assertEqual(ctx.exception.reason, "timeout")

    async def test_backend_receives_calibration_and_seed(self):
        backend = ScriptedBackend()
        generator = _generator(backend)
        await generator.generate(_calibration(), [], ["correctness_mismatch"], seed=17)
        params = backend.calls[0]["params"]
        self.assertEqual(params["category"], "multiplication")
        self.assertEqual(params["max_factor"], 12)
        self.assertEqual(params["seed"], 17)
        self.assertEqual(params["feedback"], ["correctness_mismatch"])
        self.assertEqual(params["timeout_s"], 10.0)
        self.assertIn("Recompute the answer", backend.calls[0]["prompt"])

    async def test_run_counts_attempts(self):
        generator = _generator(OfflineCompletionBackend())
        request = GenerationRequest(topic="multiplication", grade_level=5)
        state = PipelineState(index=0, request=request, category="multiplication", seed=5)
        state.calibration = _calibration()

        await generator.run(state)
        first = state.candidate
        await generator.run(state)

        self.assertEqual(state.attempt, 2)
        self.assertIsNotNone(first)
        self.assertEqual(state.candidate.category, "multiplication")

    async def test_offline_backend_items_are_correct(self):
        generator = _generator(OfflineCompletionBackend())
        for topic in ("addition", "division", "fractions", "sequences", "comparison"):
            calibration = _calibration(topic)
            for seed in range(5):
                candidate = await generator.generate(calibration, [], seed=seed)
                self.assertFalse(is_placeholder(candidate.answer))


if __name__ == "__main__":
    unittest.main()
