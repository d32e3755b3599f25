"""Shared fixtures: in-memory question store, small curriculum, stub agents."""
import itertools
import threading
from datetime import datetime, timedelta, timezone

import pytest

from question_bank.quota_generation.config import QuotaGenConfig
from question_bank.quota_generation.curriculum import Curriculum, QuotaCell
from question_bank.quota_generation.database_client import (
    Candidate,
    GenerationFailure,
    QuestionRecord,
)
from question_bank.quota_generation.agents.answer_verifier import VerificationResult


PRODUCT = "productX"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ── In-memory store ───────────────────────────────────────────────────────────

class FakeQuestionStore:
    """Implements the QuestionDatabaseClient surface over a dict."""

    def __init__(self):
        self.records = {}
        self.runs = []
        self.deleted = []
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)
        self._lock = threading.Lock()

    def _next_time(self):
        return BASE_TIME + timedelta(minutes=next(self._clock))

    def add(self, test_mode, section, sub_skill, difficulty, question_text=None,
            solution_text="Add the two values.", answer_options=None, product=PRODUCT,
            created_at=None):
        with self._lock:
            record_id = f"q{next(self._ids)}"
            self.records[record_id] = QuestionRecord(
                id=record_id,
                product=product,
                test_mode=test_mode,
                section=section,
                sub_skill=sub_skill,
                difficulty=difficulty,
                question_text=question_text or f"Stored question {record_id} for {sub_skill}",
                answer_options=list(answer_options or ["A) one", "B) two", "C) three", "D) four"]),
                correct_answer="A",
                solution_text=solution_text,
                created_at=created_at or self._next_time(),
            )
            return record_id

    def _select(self, **filters):
        with self._lock:
            rows = [
                r for r in self.records.values()
                if all(getattr(r, k) == v for k, v in filters.items() if v is not None)
            ]
        return sorted(rows, key=lambda r: (r.created_at, r.id))

    def get_section_inventory(self, product, test_mode, section):
        return self._select(product=product, test_mode=test_mode, section=section)

    def count_questions(self, product, test_mode, section, sub_skill, difficulty):
        return len(self._select(product=product, test_mode=test_mode, section=section,
                                sub_skill=sub_skill, difficulty=difficulty))

    def get_sub_skill_questions(self, product, section, sub_skill, test_mode=None):
        return self._select(product=product, section=section, sub_skill=sub_skill,
                            test_mode=test_mode)

    def get_section_questions(self, product, section, test_mode=None):
        return self._select(product=product, section=section, test_mode=test_mode)

    def insert_question(self, record):
        with self._lock:
            record_id = f"q{next(self._ids)}"
            record.id = record_id
            record.created_at = self._next_time()
            self.records[record_id] = record
            return record_id

    def delete_questions(self, ids):
        with self._lock:
            for record_id in ids:
                self.records.pop(record_id, None)
                self.deleted.append(record_id)
        return len(ids)

    def insert_generation_run(self, report):
        self.runs.append(report)


# ── Stub agents ───────────────────────────────────────────────────────────────

class StubGenerator:
    """Always produces a well-formed, unique multiple-choice candidate."""

    def __init__(self, solution="Add the two numbers to get the total."):
        self.solution = solution
        self.calls = []
        self._counter = itertools.count(1)

    def generate(self, cell, exclusion_fingerprints, attempt_number, previous_failures=None):
        n = next(self._counter)
        self.calls.append((cell, attempt_number, list(previous_failures or [])))
        return Candidate(
            source_cell=cell,
            attempt_number=attempt_number,
            question_text=f"Question {n}: what is {n} plus {n + 1000}?",
            answer_options=["A) first", "B) second", "C) third", "D) fourth"],
            correct_answer="A",
            solution_text=self.solution,
        )


class ScriptedGenerator(StubGenerator):
    """Returns scripted outcomes in order, then falls back to unique candidates."""

    def __init__(self, script):
        super().__init__()
        self.script = list(script)

    def generate(self, cell, exclusion_fingerprints, attempt_number, previous_failures=None):
        if self.script:
            item = self.script.pop(0)
            self.calls.append((cell, attempt_number, list(previous_failures or [])))
            if isinstance(item, GenerationFailure):
                return item
            text, solution = item
            return Candidate(
                source_cell=cell,
                attempt_number=attempt_number,
                question_text=text,
                answer_options=["A) first", "B) second", "C) third", "D) fourth"],
                correct_answer="A",
                solution_text=solution,
            )
        return super().generate(cell, exclusion_fingerprints, attempt_number, previous_failures)


class StubVerifier:
    """Agrees (or always disagrees) with the candidate's stated answer."""

    def __init__(self, agree=True):
        self.agree = agree
        self.calls = 0
        self._lock = threading.Lock()

    def verify(self, candidate):
        with self._lock:
            self.calls += 1
        if self.agree:
            answer = candidate.correct_answer
        else:
            answer = "B" if candidate.correct_answer != "B" else "C"
        return VerificationResult(available=True, answer=answer, expected=candidate.correct_answer)


# ── Fixtures ──────────────────────────────────────────────────────────────────

CURRICULUM_DATA = {
    "difficulty_levels": [1, 2, 3],
    "products": {
        PRODUCT: {
            "test_modes": ["practice_1", "practice_2", "diagnostic"],
            "sections": {
                "Mathematics": {
                    "total_questions": {"practice": 90, "diagnostic": 9},
                    "sub_skills": [
                        {"name": "Algebra"},
                        {"name": "Geometry"},
                        {"name": "Fractions"},
                    ],
                },
                "Verbal Reasoning": {
                    "total_questions": {"default": 6},
                    "sub_skills": [
                        {"name": "Vocabulary & Semantic Knowledge"},
                        {"name": "Logical Deduction"},
                    ],
                },
                "Numeracy": {
                    "total_questions": {"practice": 10},
                    "sub_skills": [
                        {"name": "S1"},
                        {"name": "S2"},
                        {"name": "S3"},
                        {"name": "S4"},
                    ],
                },
                "Written Expression": {
                    "total_questions": {"default": 2},
                    "sub_skills": [
                        {"name": "Creative Writing"},
                        {"name": "Persuasive Writing", "llm_appropriate": False},
                    ],
                },
            },
        }
    },
}


@pytest.fixture
def config():
    return QuotaGenConfig(
        max_attempts=5,
        retry_delay=0.0,
        openrouter_api_key="test-key",
        dry_run=False,
        max_concurrent_sections=1,
        cross_mode_diversity=True,
        prune_policy="remove_oldest",
        standardized_stem_options=False,
    )


@pytest.fixture
def curriculum():
    return Curriculum.from_dict(CURRICULUM_DATA)


@pytest.fixture
def store():
    return FakeQuestionStore()


@pytest.fixture
def algebra_cell():
    return QuotaCell(PRODUCT, "practice_1", "Mathematics", "Algebra", 1, 10)


@pytest.fixture
def make_orchestrator(curriculum, store, config):
    from question_bank.quota_generation.orchestrator import QuotaGenerationOrchestrator

    def build(generator=None, verifier=None, **overrides):
        for key, value in overrides.items():
            setattr(config, key, value)
        return QuotaGenerationOrchestrator(
            curriculum=curriculum,
            db=store,
            generator=generator or StubGenerator(),
            verifier=verifier or StubVerifier(),
            config=config,
            sleep=lambda seconds: None,
        )

    return build
