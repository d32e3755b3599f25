"""Tests for the two-stage validation state machine and the artifact scanner."""
import logging

import pytest

from question_bank.quota_generation.agents.answer_verifier import VerificationResult
from question_bank.quota_generation.agents.diversity_guard import (
    DiversityGuard,
    SectionCategory,
    fingerprint,
)
from question_bank.quota_generation.database_client import Candidate, GenerationFailure
from question_bank.quota_generation.validation import (
    INITIAL_STATE,
    TERMINAL_ACTIONS,
    TRANSITIONS,
    ArtifactScanner,
    StageOutcome,
    StageResult,
    TerminalAction,
    ValidationPipeline,
    ValidationState,
)

from conftest import StubVerifier


def make_candidate(cell, text="What is 7 plus 8?", solution="Add 7 and 8 to get 15.",
                   options=("A) 15", "B) 14", "C) 16", "D) 13")):
    return Candidate(
        source_cell=cell,
        attempt_number=1,
        question_text=text,
        answer_options=list(options),
        correct_answer="A" if options else None,
        solution_text=solution,
    )


@pytest.fixture
def pipeline(store, config):
    return ValidationPipeline.build(StubVerifier(), DiversityGuard(store, config), config)


class TestTransitionTable:
    def test_every_non_terminal_state_has_both_outcomes(self):
        non_terminal = {s for s in ValidationState if s not in TERMINAL_ACTIONS}
        assert INITIAL_STATE in non_terminal
        for state in non_terminal:
            for outcome in StageOutcome:
                assert (state, outcome) in TRANSITIONS

    def test_every_state_is_terminal_or_has_a_stage(self):
        covered = {s for s, _ in TRANSITIONS} | set(TERMINAL_ACTIONS)
        assert covered == set(ValidationState)

    def test_terminal_actions(self):
        assert TERMINAL_ACTIONS[ValidationState.ACCEPTED] == TerminalAction.PERSIST
        assert TERMINAL_ACTIONS[ValidationState.REJECTED_FATAL] == TerminalAction.ABANDON
        for state in (ValidationState.REJECTED_ARTIFACT, ValidationState.REJECTED_ANSWER,
                      ValidationState.REJECTED_DUPLICATE, ValidationState.REJECTED_MALFORMED):
            assert TERMINAL_ACTIONS[state] == TerminalAction.REGENERATE

    def test_missing_stage_rejected(self):
        with pytest.raises(ValueError):
            ValidationPipeline({ValidationState.ARTIFACT_SCAN: lambda c, ctx: None})


class TestArtifactScanner:
    def test_clean_solution(self, config):
        result = ArtifactScanner.from_config(config).scan("Multiply 12 by 5 to get 60.")
        assert result.passed
        assert result.severity == "none"

    def test_marker_is_case_insensitive(self, config):
        result = ArtifactScanner.from_config(config).scan("12 x 5 = 65. Wait, let me check: 60.")
        assert not result.passed
        assert "wait, let me" in result.markers
        assert result.severity == "low"

    def test_recalculation_is_high_severity(self, config):
        result = ArtifactScanner.from_config(config).scan("The total is 50. Let me recalculate: 60.")
        assert result.severity == "high"

    def test_overlong_solution(self):
        scanner = ArtifactScanner(["hold on"], max_solution_words=5)
        result = scanner.scan("one two three four five six")
        assert not result.passed
        assert result.too_long
        assert result.markers == []

    def test_configured_markers(self):
        scanner = ArtifactScanner(["Oops"])
        assert not scanner.scan("oops, the answer is B").passed
        assert scanner.scan("let me recalculate").passed


class TestValidationPipeline:
    def test_clean_candidate_accepted(self, pipeline, algebra_cell):
        result = pipeline.validate(make_candidate(algebra_cell), [])
        assert result.accepted
        assert result.action == TerminalAction.PERSIST
        assert result.external_calls == 1
        assert [s for s, _ in result.trace] == [
            ValidationState.ARTIFACT_SCAN,
            ValidationState.ANSWER_VERIFICATION,
            ValidationState.DUPLICATE_CHECK,
        ]

    def test_artifact_failure_skips_later_stages(self, store, config, algebra_cell, caplog):
        verifier = StubVerifier()
        pipeline = ValidationPipeline.build(verifier, DiversityGuard(store, config), config)
        candidate = make_candidate(algebra_cell, solution="15. Wait, let me recalculate... 15.")

        with caplog.at_level(logging.WARNING):
            result = pipeline.validate(candidate, [])

        assert result.state == ValidationState.REJECTED_ARTIFACT
        assert result.reason.startswith("leaked_reasoning")
        assert result.severity == "high"
        assert verifier.calls == 0
        assert result.external_calls == 0
        assert "rejected at artifact_scan" in caplog.text

    def test_answer_mismatch(self, store, config, algebra_cell):
        pipeline = ValidationPipeline.build(StubVerifier(agree=False), DiversityGuard(store, config), config)
        result = pipeline.validate(make_candidate(algebra_cell), [])
        assert result.state == ValidationState.REJECTED_ANSWER
        assert result.reason == "answer_mismatch: stated A, verified B"
        assert result.action == TerminalAction.REGENERATE

    def test_unavailable_verification_rejects(self, store, config, algebra_cell):
        class Unavailable:
            def verify(self, candidate):
                return VerificationResult(available=False, expected=candidate.correct_answer)

        pipeline = ValidationPipeline.build(Unavailable(), DiversityGuard(store, config), config)
        result = pipeline.validate(make_candidate(algebra_cell), [])
        assert result.state == ValidationState.REJECTED_ANSWER
        assert result.reason == "verification_unavailable"

    def test_duplicate_rejected(self, pipeline, algebra_cell):
        existing = [fingerprint("What is 8 plus 7?", SectionCategory.QUANTITATIVE)]
        result = pipeline.validate(make_candidate(algebra_cell), existing,
                                   SectionCategory.QUANTITATIVE)
        assert result.state == ValidationState.REJECTED_DUPLICATE
        assert result.reason == "duplicate: same operands + similar structure"

    def test_reading_overlap_accepted_with_review_flag(self, pipeline):
        from question_bank.quota_generation.curriculum import QuotaCell

        cell = QuotaCell("productX", "practice_1", "Reading Comprehension", "Main Idea", 2, 3)
        passage = "Mia planted a seed in spring and watered it every day."
        existing = [fingerprint(f"{passage}\n\nWhat is the main idea of the passage?",
                                SectionCategory.READING)]
        candidate = make_candidate(cell, text=f"{passage}\n\nWhat is the main idea of this passage?")

        result = pipeline.validate(candidate, existing)
        assert result.accepted
        assert result.needs_review

    def test_extended_response_skips_verification(self, store, config):
        from question_bank.quota_generation.agents.answer_verifier import AnswerVerifier
        from question_bank.quota_generation.curriculum import QuotaCell
        from unittest.mock import MagicMock

        client = MagicMock()
        verifier = AnswerVerifier(config, client=client)
        pipeline = ValidationPipeline.build(verifier, DiversityGuard(store, config), config)
        cell = QuotaCell("productX", "practice_1", "Written Expression", "Creative Writing", 1, 1)
        candidate = make_candidate(cell, text="Write a story about a lost key.",
                                   solution="A strong response builds tension.", options=())

        result = pipeline.validate(candidate, [])
        assert result.accepted
        assert result.external_calls == 0
        client.chat.completions.create.assert_not_called()

    def test_stages_are_replaceable(self, algebra_cell):
        calls = []

        def stage(name, outcome):
            def run(candidate, context):
                calls.append(name)
                return StageResult(outcome, reason=name)
            return run

        pipeline = ValidationPipeline({
            ValidationState.ARTIFACT_SCAN: stage("artifact", StageOutcome.PASS),
            ValidationState.ANSWER_VERIFICATION: stage("answer", StageOutcome.PASS),
            ValidationState.DUPLICATE_CHECK: stage("duplicate", StageOutcome.FAIL),
        })
        result = pipeline.validate(make_candidate(algebra_cell), [])
        assert calls == ["artifact", "answer", "duplicate"]
        assert result.state == ValidationState.REJECTED_DUPLICATE


class TestRejectFailure:
    def test_malformed(self):
        result = ValidationPipeline.reject_failure(
            GenerationFailure("malformed_response", "no JSON object", attempt_number=2)
        )
        assert result.state == ValidationState.REJECTED_MALFORMED
        assert result.action == TerminalAction.REGENERATE

    def test_fatal(self):
        result = ValidationPipeline.reject_failure(
            GenerationFailure("fatal_service_error", "401", attempt_number=1, fatal=True)
        )
        assert result.state == ValidationState.REJECTED_FATAL
        assert result.action == TerminalAction.ABANDON
