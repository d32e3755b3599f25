"""
Validation Pipeline

Runs a candidate through three ordered stages:

    ArtifactScan -> AnswerVerification -> DuplicateCheck -> Accepted

Every (state, outcome) pair maps to the next state through TRANSITIONS, and
every terminal state maps to an orchestrator action through
TERMINAL_ACTIONS. Stages are plain callables so each can be replaced by a
stub in tests.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .config import quota_gen_config, QuotaGenConfig
from .database_client import Candidate, GenerationFailure
from .agents.answer_verifier import AnswerVerifier, VerificationResult
from .agents.diversity_guard import (
    DiversityGuard,
    DuplicateVerdict,
    Fingerprint,
    SectionCategory,
    classify_section,
    fingerprint
)

logger = logging.getLogger(__name__)


class ValidationState(str, Enum):
    ARTIFACT_SCAN = 'artifact_scan'
    ANSWER_VERIFICATION = 'answer_verification'
    DUPLICATE_CHECK = 'duplicate_check'
    ACCEPTED = 'accepted'
    REJECTED_ARTIFACT = 'rejected_artifact'
    REJECTED_ANSWER = 'rejected_answer'
    REJECTED_DUPLICATE = 'rejected_duplicate'
    REJECTED_MALFORMED = 'rejected_malformed'
    REJECTED_FATAL = 'rejected_fatal'


class StageOutcome(str, Enum):
    PASS = 'pass'
    FAIL = 'fail'


class TerminalAction(str, Enum):
    PERSIST = 'persist'
    REGENERATE = 'regenerate'
    ABANDON = 'abandon'


INITIAL_STATE = ValidationState.ARTIFACT_SCAN

TRANSITIONS: Dict[Tuple[ValidationState, StageOutcome], ValidationState] = {
    (ValidationState.ARTIFACT_SCAN, StageOutcome.PASS): ValidationState.ANSWER_VERIFICATION,
    (ValidationState.ARTIFACT_SCAN, StageOutcome.FAIL): ValidationState.REJECTED_ARTIFACT,
    (ValidationState.ANSWER_VERIFICATION, StageOutcome.PASS): ValidationState.DUPLICATE_CHECK,
    (ValidationState.ANSWER_VERIFICATION, StageOutcome.FAIL): ValidationState.REJECTED_ANSWER,
    (ValidationState.DUPLICATE_CHECK, StageOutcome.PASS): ValidationState.ACCEPTED,
    (ValidationState.DUPLICATE_CHECK, StageOutcome.FAIL): ValidationState.REJECTED_DUPLICATE,
}

TERMINAL_ACTIONS: Dict[ValidationState, TerminalAction] = {
    ValidationState.ACCEPTED: TerminalAction.PERSIST,
    ValidationState.REJECTED_ARTIFACT: TerminalAction.REGENERATE,
    ValidationState.REJECTED_ANSWER: TerminalAction.REGENERATE,
    ValidationState.REJECTED_DUPLICATE: TerminalAction.REGENERATE,
    ValidationState.REJECTED_MALFORMED: TerminalAction.REGENERATE,
    ValidationState.REJECTED_FATAL: TerminalAction.ABANDON,
}


# ============================================================
# Artifact scanning
# ============================================================

@dataclass
class ArtifactScanResult:
    markers: List[str] = field(default_factory=list)
    severity: str = 'none'
    word_count: int = 0
    too_long: bool = False

    @property
    def passed(self) -> bool:
        return not self.markers and not self.too_long


class ArtifactScanner:
    """Case-insensitive substring scan for leaked-reasoning markers."""

    def __init__(
        self,
        markers: List[str],
        high_severity_markers: Optional[List[str]] = None,
        max_solution_words: int = 0
    ):
        self.markers = [m.lower() for m in markers]
        self.high_severity_markers = [m.lower() for m in (high_severity_markers or [])]
        self.max_solution_words = max_solution_words

    @classmethod
    def from_config(cls, config: QuotaGenConfig) -> 'ArtifactScanner':
        return cls(
            config.artifact_markers,
            config.high_severity_markers,
            config.max_solution_words
        )

    def scan(self, solution_text: str) -> ArtifactScanResult:
        text = (solution_text or '').lower()
        found = [m for m in self.markers if m in text]
        word_count = len(text.split())
        too_long = bool(self.max_solution_words) and word_count > self.max_solution_words

        if any(m in text for m in self.high_severity_markers) and found:
            severity = 'high'
        elif found or too_long:
            severity = 'low'
        else:
            severity = 'none'

        return ArtifactScanResult(
            markers=found,
            severity=severity,
            word_count=word_count,
            too_long=too_long
        )


# ============================================================
# Stages
# ============================================================

@dataclass
class ValidationContext:
    """Per-candidate inputs shared by the stages."""
    existing_fps: List[Fingerprint]
    category: SectionCategory
    fingerprint: Fingerprint


@dataclass
class StageResult:
    outcome: StageOutcome
    reason: Optional[str] = None
    severity: Optional[str] = None
    needs_review: bool = False
    external_call: bool = False


Stage = Callable[[Candidate, ValidationContext], StageResult]


def artifact_stage(scanner: ArtifactScanner) -> Stage:
    def run(candidate: Candidate, context: ValidationContext) -> StageResult:
        result = scanner.scan(candidate.solution_text)
        if result.passed:
            return StageResult(StageOutcome.PASS)
        if result.markers:
            reason = f"leaked_reasoning: {', '.join(result.markers)}"
        else:
            reason = f"solution_too_long: {result.word_count} words"
        return StageResult(StageOutcome.FAIL, reason=reason, severity=result.severity)
    return run


def verification_stage(verifier: AnswerVerifier) -> Stage:
    def run(candidate: Candidate, context: ValidationContext) -> StageResult:
        result: VerificationResult = verifier.verify(candidate)
        called = result.method != 'skipped'
        if not result.available:
            return StageResult(StageOutcome.FAIL, reason='verification_unavailable',
                               external_call=called)
        if not result.agrees:
            return StageResult(
                StageOutcome.FAIL,
                reason=f"answer_mismatch: stated {result.expected}, verified {result.answer}",
                external_call=called
            )
        return StageResult(StageOutcome.PASS, external_call=called)
    return run


def duplicate_stage(check: Callable[..., DuplicateVerdict]) -> Stage:
    def run(candidate: Candidate, context: ValidationContext) -> StageResult:
        verdict = check(context.fingerprint, context.existing_fps, context.category,
                        sub_skill=candidate.sub_skill)
        if verdict.is_duplicate:
            return StageResult(StageOutcome.FAIL, reason=f"duplicate: {verdict.reason}")
        if verdict.needs_review:
            logger.info(f"Flagged for review ({verdict.reason}): {candidate.preview(80)}")
            return StageResult(StageOutcome.PASS, reason=verdict.reason, needs_review=True)
        return StageResult(StageOutcome.PASS)
    return run


# ============================================================
# Pipeline
# ============================================================

@dataclass
class ValidationResult:
    state: ValidationState
    reason: Optional[str] = None
    severity: Optional[str] = None
    needs_review: bool = False
    external_calls: int = 0
    fingerprint: Optional[Fingerprint] = None
    trace: List[Tuple[ValidationState, StageOutcome]] = field(default_factory=list)

    @property
    def action(self) -> TerminalAction:
        return TERMINAL_ACTIONS[self.state]

    @property
    def accepted(self) -> bool:
        return self.state == ValidationState.ACCEPTED


class ValidationPipeline:
    """Drives a candidate from INITIAL_STATE to a terminal state."""

    def __init__(self, stages: Dict[ValidationState, Stage]):
        missing = {s for s, _ in TRANSITIONS} - set(stages)
        if missing:
            raise ValueError(f"No stage registered for: {sorted(s.value for s in missing)}")
        self.stages = stages

    @classmethod
    def build(
        cls,
        verifier: AnswerVerifier,
        guard: DiversityGuard,
        config: Optional[QuotaGenConfig] = None
    ) -> 'ValidationPipeline':
        config = config or quota_gen_config
        return cls({
            ValidationState.ARTIFACT_SCAN: artifact_stage(ArtifactScanner.from_config(config)),
            ValidationState.ANSWER_VERIFICATION: verification_stage(verifier),
            ValidationState.DUPLICATE_CHECK: duplicate_stage(guard.is_duplicate),
        })

    def validate(
        self,
        candidate: Candidate,
        existing_fps: List[Fingerprint],
        category: Optional[SectionCategory] = None
    ) -> ValidationResult:
        """
        Run every stage in order until a terminal state is reached.

        Args:
            candidate: Candidate to validate
            existing_fps: Stored fingerprints plus those accepted earlier in this run
            category: Section category (classified from the section name if omitted)

        Returns:
            ValidationResult: Terminal state, reason and stage trace
        """
        if category is None:
            category, _ = classify_section(candidate.section)

        context = ValidationContext(
            existing_fps=existing_fps,
            category=category,
            fingerprint=fingerprint(candidate.question_text, category,
                                    answer_options=candidate.answer_options)
        )
        result = ValidationResult(state=INITIAL_STATE, fingerprint=context.fingerprint)

        state = INITIAL_STATE
        while state not in TERMINAL_ACTIONS:
            stage_result = self.stages[state](candidate, context)
            result.trace.append((state, stage_result.outcome))
            if stage_result.external_call:
                result.external_calls += 1
            if stage_result.needs_review:
                result.needs_review = True
                result.reason = stage_result.reason
            if stage_result.outcome == StageOutcome.FAIL:
                result.reason = stage_result.reason
                result.severity = stage_result.severity
            state = TRANSITIONS[(state, stage_result.outcome)]

        result.state = state
        if not result.accepted:
            message = (
                f"Candidate rejected at {result.trace[-1][0].value} -> {state.value} "
                f"({candidate.source_cell.label()}, attempt {candidate.attempt_number}): "
                f"{result.reason}"
            )
            if result.severity:
                message += f" [severity={result.severity}]"
            logger.warning(message)
        return result

    @staticmethod
    def reject_failure(failure: GenerationFailure) -> ValidationResult:
        """Terminal result for a generator failure (no stages run)."""
        state = ValidationState.REJECTED_FATAL if failure.fatal else ValidationState.REJECTED_MALFORMED
        logger.warning(f"Generation failed ({state.value}): {failure.reason} {failure.detail[:120]}")
        return ValidationResult(state=state, reason=failure.reason)
