import random
import unittest
from collections import Counter

from config import OrchestratorConfig
from engines.enhancer import LEARNING_STYLE_TIPS, Enhancer
from engines.operations import build_choices, get_operation, numeric_tokens
from engines.validation import Validator
from schemas import CandidateItem, Persona


def _candidate(category="addition", operands=(8, 5), grade=2):
    spec = get_operation(category)
    operands = list(operands)
    answer = spec.evaluate(operands)
    return CandidateItem(
        category=category,
        operands=operands,
        answer=answer,
        answer_type=spec.answer_type,
        question_text=spec.render(operands),
        explanation=spec.explain(operands, answer),
        choices=build_choices(category, operands, answer, random.Random(1), allow_negative=True),
        grade_level=grade,
        difficulty="easy",
    )


class EnhancerTests(unittest.TestCase):
    def setUp(self):
        self.enhancer = Enhancer(Validator(OrchestratorConfig()))

    def test_answer_operands_and_choices_are_preserved(self):
        personas = [
            Persona(grade=2, learning_style="visual", interests=["sports"]),
            Persona(grade=7, learning_style="auditory", interests=["space"], cultural_context="New Zealand"),
            Persona(grade=4, interests=["unknown-hobby"], cultural_context="Elsewhere"),
        ]
        candidates = [
            _candidate(),
            _candidate("subtraction", (15, 6), grade=3),
            _candidate("multiplication", (4, 6), grade=7),
            _candidate("division", (24, 6), grade=5),
            _candidate("fraction_addition", ("1/5", "2/5"), grade=6),
            _candidate("pattern", (2, 5, 8), grade=3),
            _candidate("comparison", (14, 41), grade=2),
        ]
        for candidate in candidates:
            for persona in personas:
                enhanced = self.enhancer.enhance(candidate, persona)
                self.assertEqual(enhanced.answer, candidate.answer)
                self.assertEqual(enhanced.operands, candidate.operands)
                self.assertEqual(enhanced.choices, candidate.choices)
                self.assertEqual(self.enhancer.validator.check_integrity(enhanced), [])

    def test_story_rewording_for_young_learners(self):
        persona = Persona(grade=2, interests=["animals"])
        enhanced = self.enhancer.enhance(_candidate(), persona)
        self.assertTrue(enhanced.enhanced)
        self.assertNotEqual(enhanced.question_text, "What is 8 + 5?")
        self.assertEqual(Counter(numeric_tokens(enhanced.question_text)), Counter(["8", "5"]))

    def test_cultural_substitution(self):
        persona = Persona(grade=2, interests=["food"], cultural_context="New Zealand")
        for seed_operands in [(3, 4), (5, 2), (6, 1), (7, 2), (2, 9)]:
            enhanced = self.enhancer.enhance(_candidate("addition", seed_operands), persona)
            self.assertNotIn("apples", enhanced.question_text)
            self.assertNotIn("cookies", enhanced.question_text)

    def test_learning_style_tip_appended(self):
        persona = Persona(learning_style="kinesthetic")
        enhanced = self.enhancer.enhance(_candidate(), persona)
        self.assertTrue(enhanced.explanation.endswith(LEARNING_STYLE_TIPS["kinesthetic"]))
        self.assertIn("13", enhanced.explanation)

    def test_enhancement_is_deterministic(self):
        persona = Persona(grade=3, interests=["games", "music"], learning_style="visual")
        first = self.enhancer.enhance(_candidate(), persona)
        second = self.enhancer.enhance(_candidate(), persona)
        self.assertEqual(first, second)

    def test_without_persona_is_noop(self):
        candidate = _candidate()
        self.assertIs(self.enhancer.enhance(candidate, None), candidate)

    def test_enhancement_discarded_when_integrity_breaks(self):
        class _RejectingValidator(Validator):
            def check_integrity(self, candidate):
                return ["correctness_mismatch"] if candidate.enhanced else []

        enhancer = Enhancer(_RejectingValidator(OrchestratorConfig()))
        candidate = _candidate()
        result = enhancer.enhance(candidate, Persona(grade=2, interests=["sports"]))
        self.assertIs(result, candidate)

    def test_repair_reorders_negative_subtraction(self):
        candidate = _candidate("subtraction", (4, 11), grade=3)
        repaired = self.enhancer.repair(candidate)
        self.assertIsNotNone(repaired)
        self.assertEqual(repaired.operands, [11, 4])
        self.assertEqual(repaired.answer, 7)
        self.assertEqual(repaired.question_text, "What is 11 - 4?")
        self.assertIn("7", repaired.explanation)
        self.assertIn(7, repaired.choices)

    def test_repair_only_applies_to_subtraction(self):
        self.assertIsNone(self.enhancer.repair(_candidate("addition", (4, 11))))


if __name__ == "__main__":
    unittest.main()
