"""Tests for deficit filling, full runs and run control in the orchestrator."""
from unittest.mock import MagicMock

import pytest

from question_bank.quota_generation.agents.content_generator import ContentGenerator
from question_bank.quota_generation.curriculum import QuotaCell
from question_bank.quota_generation.database_client import Candidate, GenerationFailure
from question_bank.quota_generation.orchestrator import (
    QuotaGenerationOrchestrator,
    RunAborted,
)

from conftest import PRODUCT, ScriptedGenerator, StubGenerator, StubVerifier


def cell_count(store, cell):
    return store.count_questions(*cell.key)


class TestFillDeficit:
    def test_fills_exactly_the_deficit(self, make_orchestrator, store, algebra_cell):
        for _ in range(7):
            store.add("practice_1", "Mathematics", "Algebra", 1)

        orchestrator = make_orchestrator()
        result = orchestrator.fill_deficit(algebra_cell, 3)

        assert len(result.accepted) == 3
        assert result.failures == []
        assert cell_count(store, algebra_cell) == 10
        assert all(r.id for r in result.accepted)
        assert orchestrator.stats.attempted == 3
        assert orchestrator.stats.regenerated == 0

    def test_disagreeing_verifier_exhausts_attempts(self, make_orchestrator, store, algebra_cell):
        generator = StubGenerator()
        orchestrator = make_orchestrator(generator=generator, verifier=StubVerifier(agree=False))

        result = orchestrator.fill_deficit(algebra_cell, 1)

        assert result.accepted == []
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.attempts == 5
        assert failure.reason.startswith("rejected_answer")
        assert len(generator.calls) == 5
        assert cell_count(store, algebra_cell) == 0
        assert orchestrator.stats.rejected_by_stage["rejected_answer"] == 5
        assert orchestrator.stats.regenerated == 4

    def test_failed_slot_does_not_stop_later_slots(self, make_orchestrator, store, algebra_cell):
        leak = ("What is 3 plus 4?", "7. Wait, let me recalculate... 7.")
        generator = ScriptedGenerator([leak] * 5)
        orchestrator = make_orchestrator(generator=generator)

        result = orchestrator.fill_deficit(algebra_cell, 2)

        assert len(result.failures) == 1
        assert result.failures[0].slot == 1
        assert len(result.accepted) == 1
        assert cell_count(store, algebra_cell) == 1

    def test_artifact_leak_is_regenerated_with_feedback(self, make_orchestrator, store, algebra_cell):
        generator = ScriptedGenerator([("What is 3 plus 4?", "7. Wait, let me recalculate... 7.")])
        orchestrator = make_orchestrator(generator=generator)

        result = orchestrator.fill_deficit(algebra_cell, 1)

        assert len(result.accepted) == 1
        assert "Wait, let me" not in result.accepted[0].solution_text
        assert orchestrator.stats.rejected_by_stage["rejected_artifact"] == 1
        _, attempt, previous_failures = generator.calls[1]
        assert attempt == 2
        assert "leaked_reasoning" in previous_failures[0]

    def test_stored_duplicate_is_rejected(self, make_orchestrator, store, algebra_cell):
        # different difficulty and test mode still count as existing inventory
        store.add("practice_2", "Mathematics", "Algebra", 3, question_text="What is 8 plus 7?")
        generator = ScriptedGenerator([("What is 7 plus 8?", "Add them to get 15.")])
        orchestrator = make_orchestrator(generator=generator)

        result = orchestrator.fill_deficit(algebra_cell, 1)

        assert len(result.accepted) == 1
        assert result.accepted[0].question_text != "What is 7 plus 8?"
        assert orchestrator.stats.rejected_by_stage["rejected_duplicate"] == 1

    def test_in_run_acceptances_are_excluded(self, make_orchestrator, store, algebra_cell):
        same = ("What is 21 plus 34?", "Add them to get 55.")
        generator = ScriptedGenerator([same, same])
        orchestrator = make_orchestrator(generator=generator)

        result = orchestrator.fill_deficit(algebra_cell, 2)

        texts = [r.question_text for r in result.accepted]
        assert texts.count("What is 21 plus 34?") == 1
        assert len(texts) == 2
        assert orchestrator.stats.rejected_by_stage["rejected_duplicate"] == 1

    def test_identical_standardized_stems_are_not_both_stored(self, make_orchestrator, store):
        option_sets = iter([
            ["A) cat", "B) dog", "C) cow", "D) car"],
            ["A) red", "B) blue", "C) green", "D) tall"],
        ])

        class OddOneOutGenerator(StubGenerator):
            def generate(self, cell, exclusion_fingerprints, attempt_number, previous_failures=None):
                self.calls.append((cell, attempt_number, list(previous_failures or [])))
                options = next(option_sets, None)
                if options is None:
                    return super().generate(cell, exclusion_fingerprints, attempt_number, previous_failures)
                return Candidate(
                    source_cell=cell,
                    attempt_number=attempt_number,
                    question_text="Which word is the odd one out?",
                    answer_options=options,
                    correct_answer="D",
                    solution_text="The other three belong together.",
                )

        cell = QuotaCell(PRODUCT, "practice_1", "Verbal Reasoning", "Odd One Out", 1, 2)
        orchestrator = make_orchestrator(generator=OddOneOutGenerator())

        result = orchestrator.fill_deficit(cell, 2)

        texts = [r.question_text.lower() for r in result.accepted]
        assert len(texts) == 2
        assert len(texts) == len(set(texts))
        assert orchestrator.stats.rejected_by_stage["rejected_duplicate"] == 1

    def test_malformed_response_is_regenerated(self, make_orchestrator, store, algebra_cell):
        generator = ScriptedGenerator([GenerationFailure("malformed_response", "no JSON", 1)])
        orchestrator = make_orchestrator(generator=generator)

        result = orchestrator.fill_deficit(algebra_cell, 1)

        assert len(result.accepted) == 1
        assert orchestrator.stats.rejected_by_stage["rejected_malformed"] == 1

    def test_fatal_failure_abandons_the_cell(self, curriculum, store, config):
        client = MagicMock()
        generator = ContentGenerator(curriculum, config, client=client)
        orchestrator = QuotaGenerationOrchestrator(
            curriculum=curriculum, db=store, generator=generator,
            verifier=StubVerifier(), config=config, sleep=lambda s: None
        )
        cell = QuotaCell(PRODUCT, "practice_1", "Written Expression", "Persuasive Writing", 1, 3)

        result = orchestrator.fill_deficit(cell, 3)

        assert result.accepted == []
        assert [f.attempts for f in result.failures] == [1, 0, 0]
        assert all("not_llm_appropriate" in f.reason for f in result.failures)
        client.chat.completions.create.assert_not_called()
        assert orchestrator.stats.external_calls == 0

    def test_backoff_between_attempts(self, curriculum, store, config, algebra_cell):
        sleeps = []
        config.retry_delay = 0.5
        orchestrator = QuotaGenerationOrchestrator(
            curriculum=curriculum, db=store, generator=StubGenerator(),
            verifier=StubVerifier(agree=False), config=config, sleep=sleeps.append
        )
        orchestrator.fill_deficit(algebra_cell, 1)
        assert sleeps == [1.0, 1.5, 2.0, 2.5]

    def test_counts_external_calls(self, make_orchestrator, algebra_cell):
        orchestrator = make_orchestrator()
        orchestrator.fill_deficit(algebra_cell, 3)
        # one generation plus one verification per accepted item
        assert orchestrator.stats.external_calls == 6

    def test_dry_run_persists_nothing(self, make_orchestrator, store, algebra_cell):
        orchestrator = make_orchestrator(dry_run=True)
        result = orchestrator.fill_deficit(algebra_cell, 3)
        assert len(result.accepted) == 3
        assert cell_count(store, algebra_cell) == 0

    def test_no_deficit_is_a_no_op(self, make_orchestrator, algebra_cell):
        generator = StubGenerator()
        make_orchestrator(generator=generator).fill_deficit(algebra_cell, 0)
        assert generator.calls == []


class TestRun:
    def test_run_converges_to_quota(self, make_orchestrator, curriculum, store):
        orchestrator = make_orchestrator()
        report = orchestrator.run(PRODUCT, "practice_1", sections=["Numeracy"])

        for cell in curriculum.cells(PRODUCT, "practice_1", ["Numeracy"]):
            assert cell_count(store, cell) == cell.required_count
        assert report.accepted == 10
        assert report.attempted == 10
        assert report.regeneration_rate == 0.0
        assert report.call_efficiency == 1.0
        assert not report.has_failures
        assert len(store.runs) == 1

    def test_second_run_is_a_no_op(self, make_orchestrator):
        generator = StubGenerator()
        orchestrator = make_orchestrator(generator=generator)
        orchestrator.run(PRODUCT, "practice_1", sections=["Numeracy"])
        calls = len(generator.calls)

        report = orchestrator.run(PRODUCT, "practice_1", sections=["Numeracy"])

        assert len(generator.calls) == calls
        assert report.attempted == 0

    def test_partial_inventory_only_fills_gaps(self, make_orchestrator, store):
        for _ in range(3):
            store.add("practice_1", "Numeracy", "S1", 1)
        report = make_orchestrator().run(PRODUCT, "practice_1", sections=["Numeracy"])
        # S1 d1 needs 1 and already has 3: no generation for it, no pruning
        assert report.accepted == 9
        assert store.count_questions(PRODUCT, "practice_1", "Numeracy", "S1", 1) == 3

    def test_concurrent_sections(self, make_orchestrator, curriculum, store):
        orchestrator = make_orchestrator(max_concurrent_sections=3)
        sections = ["Mathematics", "Numeracy", "Verbal Reasoning"]

        report = orchestrator.run(PRODUCT, "practice_1", sections=sections)

        assert report.accepted == 90 + 10 + 6
        for cell in curriculum.cells(PRODUCT, "practice_1", sections):
            assert cell_count(store, cell) == cell.required_count
        assert report.errors == []

    def test_unassigned_records_are_reported(self, make_orchestrator, store):
        store.add("practice_1", "Numeracy", None, 2)
        report = make_orchestrator().run(PRODUCT, "practice_1", sections=["Numeracy"])
        assert report.unassigned[0]["reason"] == "missing_sub_skill_or_difficulty"
        assert report.accepted == 10

    def test_unknown_section_is_reported_as_error(self, make_orchestrator):
        report = make_orchestrator().run(PRODUCT, "practice_1", sections=["Art"])
        assert report.errors
        assert report.has_failures

    def test_run_with_prune(self, make_orchestrator, store):
        for _ in range(4):
            store.add("practice_1", "Numeracy", "S1", 1)
        report = make_orchestrator().run(PRODUCT, "practice_1", sections=["Numeracy"], prune=True)

        assert report.pruned == 3
        assert store.count_questions(PRODUCT, "practice_1", "Numeracy", "S1", 1) == 1
        assert report.balance_violations == []

    def test_abort_before_run(self, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.abort()
        with pytest.raises(RunAborted):
            orchestrator.run(PRODUCT, "practice_1")

    def test_abort_is_honored_between_cells(self, make_orchestrator, store):
        class AbortingGenerator(StubGenerator):
            orchestrator = None

            def generate(self, cell, exclusion_fingerprints, attempt_number, previous_failures=None):
                self.orchestrator.abort()
                return super().generate(cell, exclusion_fingerprints, attempt_number, previous_failures)

        generator = AbortingGenerator()
        orchestrator = make_orchestrator(generator=generator)
        generator.orchestrator = orchestrator

        report = orchestrator.run(PRODUCT, "practice_1", sections=["Mathematics"])

        # the first cell finishes, nothing after it starts
        assert report.aborted
        assert report.accepted == 10
        assert store.count_questions(PRODUCT, "practice_1", "Mathematics", "Algebra", 1) == 10
        assert store.count_questions(PRODUCT, "practice_1", "Mathematics", "Algebra", 2) == 0

    def test_classification_fallback_is_reported(self, curriculum, store, config):
        curriculum.products[PRODUCT].sections["Applied Numeracy"] = \
            curriculum.products[PRODUCT].sections["Numeracy"]
        orchestrator = QuotaGenerationOrchestrator(
            curriculum=curriculum, db=store, generator=StubGenerator(),
            verifier=StubVerifier(), config=config, sleep=lambda s: None
        )
        report = orchestrator.run(PRODUCT, "practice_1", sections=["Applied Numeracy"])
        assert report.classification_fallbacks == ["Applied Numeracy"]

    def test_dry_run_report_not_persisted(self, make_orchestrator, store):
        report = make_orchestrator(dry_run=True).run(PRODUCT, "practice_1", sections=["Numeracy"])
        assert report.dry_run
        assert report.accepted == 10
        assert store.records == {}
        assert store.runs == []
