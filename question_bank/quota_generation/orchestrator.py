"""
Quota Generation Orchestrator

Coordinates a quota run for one product and test mode:
1. Derive quota cells from the curriculum
2. Per section (optionally several sections at once):
    a. Compute deltas from a fresh read of the store
    b. For each deficit cell, fill the gap slot by slot through
       ContentGenerator -> ValidationPipeline with bounded regeneration
    c. Optionally prune surplus back to the balanced quota
3. Summarize, log and persist the run report
"""

import time
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .config import quota_gen_config, QuotaGenConfig, ConfigurationError
from .curriculum import Curriculum, QuotaCell
from .database_client import (
    QuestionDatabaseClient,
    QuestionRecord,
    GenerationFailure,
    GenerationRunStats,
    SlotFailure
)
from .accountant import InventoryAccountant
from .validation import ValidationPipeline, TerminalAction
from .pruner import BalancePruner, PrunePolicy
from .reporter import RunReporter, RunReport
from .agents import AnswerVerifier, ContentGenerator, DiversityGuard, Fingerprint
from .agents.base import BaseAgent

logger = logging.getLogger(__name__)


class RunAborted(Exception):
    """Raised when run() is called after abort() was requested."""
    pass


@dataclass
class FillResult:
    """Outcome of filling one cell's deficit."""
    cell: QuotaCell
    accepted: List[QuestionRecord] = field(default_factory=list)
    failures: List[SlotFailure] = field(default_factory=list)
    flagged_for_review: List[str] = field(default_factory=list)


class QuotaGenerationOrchestrator:
    """Coordinates gap filling, validation and pruning against curriculum quotas."""

    def __init__(
        self,
        curriculum: Optional[Curriculum] = None,
        db: Optional[QuestionDatabaseClient] = None,
        generator: Optional[ContentGenerator] = None,
        verifier: Optional[AnswerVerifier] = None,
        pipeline: Optional[ValidationPipeline] = None,
        config: Optional[QuotaGenConfig] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the orchestrator and its collaborators.

        Anything not passed in is built from configuration; tests inject
        stubs for the store, generator and verifier.
        """
        self.config = config or quota_gen_config

        needs_llm = generator is None or (verifier is None and pipeline is None)
        if not self.config.validate(require_api_key=needs_llm):
            raise ConfigurationError("Invalid quota generation configuration")

        self.curriculum = curriculum or Curriculum.from_file(self.config.curriculum_path)
        self.db = db or QuestionDatabaseClient(self.config)

        self.guard = DiversityGuard(self.db, self.config)
        self.generator = generator or ContentGenerator(self.curriculum, self.config)
        if verifier is None and pipeline is None:
            verifier = AnswerVerifier(self.config)
        self.verifier = verifier
        self.pipeline = pipeline or ValidationPipeline.build(self.verifier, self.guard, self.config)

        self.accountant = InventoryAccountant(self.db)
        self.pruner = BalancePruner(self.curriculum, self.db, self.config)
        self.reporter = RunReporter(self.config, self.db)

        self._sleep = sleep
        self._abort = threading.Event()
        self.stats = GenerationRunStats(run_date=datetime.utcnow())

        logger.info("QuotaGenerationOrchestrator initialized")

    def abort(self) -> None:
        """Request a graceful stop; honored between cells."""
        logger.warning("Abort requested - finishing the current cell")
        self._abort.set()

    # ============================================================
    # DEFICIT FILLING
    # ============================================================

    def fill_deficit(self, cell: QuotaCell, deficit_count: int) -> FillResult:
        """
        Fill deficit_count slots for a cell.

        Each slot gets up to max_attempts generate/validate rounds. Accepted
        candidates are persisted and their fingerprints join this cell's
        in-run exclusion set. A slot that exhausts its attempts is recorded
        as a failure and the remaining slots still run.

        Args:
            cell: Quota cell to fill
            deficit_count: Number of questions missing

        Returns:
            FillResult: Accepted records and slot failures
        """
        result = FillResult(cell=cell)
        if deficit_count <= 0:
            return result

        category, _ = self.guard.category_for(cell.section)
        existing = self.guard.load_fingerprints(cell)
        in_run: List[Fingerprint] = []
        max_attempts = self.config.max_attempts
        first_call = True

        logger.info(f"Filling {deficit_count} slots for {cell.label()}")

        for slot in range(1, deficit_count + 1):
            previous_failures: List[str] = []
            last_reason = None
            attempts = 0
            filled = False
            abandoned = False

            for attempt in range(1, max_attempts + 1):
                if not first_call:
                    self._sleep(self.config.retry_delay * attempt)
                first_call = False
                attempts = attempt

                self.stats.record_attempt(cell, attempt)
                outcome = self.generator.generate(cell, existing + in_run, attempt, previous_failures)
                if not isinstance(outcome, GenerationFailure) or outcome.called:
                    self.stats.record_usage(1, 0, 0)

                if isinstance(outcome, GenerationFailure):
                    validation = ValidationPipeline.reject_failure(outcome)
                else:
                    validation = self.pipeline.validate(outcome, existing + in_run, category)
                    self.stats.record_usage(validation.external_calls, 0, 0)

                if validation.accepted:
                    record = outcome.to_record()
                    if not self.config.dry_run:
                        record.id = self.db.insert_question(record)
                    else:
                        logger.info(f"[DRY RUN] Would save question for {cell.label()}")
                    in_run.append(validation.fingerprint)
                    result.accepted.append(record)
                    self.stats.record_acceptance(cell)
                    if validation.needs_review:
                        note = f"{cell.label()}: {validation.reason}: {outcome.preview(80)}"
                        result.flagged_for_review.append(note)
                        self.stats.record_finding('flagged_for_review', note)
                    filled = True
                    break

                self.stats.record_rejection(cell, validation.state.value)
                last_reason = f"{validation.state.value}: {validation.reason}"

                if validation.action == TerminalAction.ABANDON:
                    abandoned = True
                    break

                preview = outcome.preview(100) if not isinstance(outcome, GenerationFailure) else 'no usable response'
                previous_failures.append(f"{preview} -> {validation.reason}")

            if filled:
                continue

            failure = SlotFailure(cell=cell.label(), slot=slot, attempts=attempts, reason=last_reason or 'unknown')
            result.failures.append(failure)
            self.stats.record_failure(cell, failure)
            logger.error(f"Slot {slot}/{deficit_count} of {cell.label()} failed after {attempts} attempts: {last_reason}")

            if abandoned:
                # Nothing will succeed for this cell; report the rest without calling out.
                for remaining in range(slot + 1, deficit_count + 1):
                    failure = SlotFailure(cell=cell.label(), slot=remaining, attempts=0, reason=last_reason or 'abandoned')
                    result.failures.append(failure)
                    self.stats.record_failure(cell, failure)
                break

        logger.info(
            f"{cell.label()}: {len(result.accepted)}/{deficit_count} filled, "
            f"{len(result.failures)} failed"
        )
        return result

    # ============================================================
    # RUN
    # ============================================================

    def run(
        self,
        product: str,
        test_mode: str,
        sections: Optional[List[str]] = None,
        prune: bool = False,
        prune_policy: Optional[PrunePolicy] = None
    ) -> RunReport:
        """
        Execute a quota run for one product and test mode.

        Returns:
            RunReport: Summary of the run (also logged and persisted)
        """
        if self._abort.is_set():
            raise RunAborted("Run aborted before start")

        start_time = time.time()
        self.stats = GenerationRunStats(run_date=datetime.utcnow(), product=product, test_modes=[test_mode])
        for agent in (self.generator, self.verifier):
            if isinstance(agent, BaseAgent):
                agent.reset_call_count()

        try:
            logger.info("=" * 60)
            logger.info("Starting Quota Generation Run")
            logger.info("=" * 60)
            logger.info(f"Product: {product}")
            logger.info(f"Test mode: {test_mode}")
            logger.info(f"Sections: {sections or 'all'}")
            logger.info(f"Max attempts per slot: {self.config.max_attempts}")
            logger.info(f"Prune: {prune} ({prune_policy or self.config.prune_policy})")
            logger.info(f"Dry run: {self.config.dry_run}")

            cells = self.curriculum.cells(product, test_mode, sections)
            by_section = OrderedDict()
            for cell in cells:
                by_section.setdefault(cell.section, []).append(cell)

            workers = min(self.config.max_concurrent_sections, len(by_section)) or 1
            if workers == 1:
                for section, section_cells in by_section.items():
                    self._run_section_safely(section, section_cells, prune, prune_policy)
            else:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = {
                        executor.submit(self._run_section_safely, section, section_cells, prune, prune_policy): section
                        for section, section_cells in by_section.items()
                    }
                    for future in as_completed(futures):
                        future.result()

        except Exception as e:
            logger.exception(f"Quota generation run failed: {e}")
            self.stats.record_finding('errors', str(e))

        return self._finalize(start_time)

    def _run_section_safely(
        self,
        section: str,
        cells: List[QuotaCell],
        prune: bool,
        prune_policy: Optional[PrunePolicy]
    ) -> None:
        try:
            self._process_section(section, cells, prune, prune_policy)
        except Exception as e:
            logger.exception(f"Section {section} failed: {e}")
            self.stats.record_finding('errors', f"{section}: {e}")

    def _process_section(
        self,
        section: str,
        cells: List[QuotaCell],
        prune: bool,
        prune_policy: Optional[PrunePolicy]
    ) -> None:
        """Fill deficits cell by cell, then optionally prune the section."""
        _, exact = self.guard.category_for(section)
        if not exact:
            self.stats.record_finding('classification_fallbacks', section)

        deltas = self.accountant.compute_deltas(cells)
        for finding in deltas.unassigned:
            self.stats.record_finding('unassigned', finding)

        for delta in deltas.deltas:
            if self._abort.is_set():
                logger.warning(f"Abort honored before {delta.cell.label()}")
                self.stats.aborted = True
                return

            cell = delta.cell
            actual = self.accountant.current_count(cell)
            self.stats.record_cell_start(cell, actual)
            deficit = cell.required_count - actual
            if deficit > 0:
                self.fill_deficit(cell, deficit)

        if prune and not self._abort.is_set():
            self._prune_section(cells[0].section_key, prune_policy)

    def _prune_section(self, section_key, prune_policy: Optional[PrunePolicy]) -> None:
        deltas = self.accountant.compute_deltas(
            self.curriculum.cells(section_key[0], section_key[1], [section_key[2]])
        )
        surplus = sum(-d.delta for d in deltas.surpluses())
        if surplus <= 0:
            logger.info(f"{section_key[1]}/{section_key[2]}: no surplus to prune")
            return

        plan = self.pruner.prune_surplus(section_key, surplus, prune_policy)
        for violation in plan.violations:
            self.stats.record_finding('balance_violations', violation)
        self.stats.record_pruned(self.pruner.apply(plan))

    def _agent_counter(self, name: str) -> int:
        return sum(
            getattr(agent, name) for agent in (self.generator, self.verifier)
            if isinstance(agent, BaseAgent)
        )

    def _finalize(self, start_time: float) -> RunReport:
        """Collect token usage, then summarize, log and persist the report."""
        self.stats.execution_time_seconds = int(time.time() - start_time)

        self.stats.record_usage(
            0,
            self._agent_counter('input_tokens'),
            self._agent_counter('output_tokens')
        )

        report = self.reporter.summarize(self.stats)
        self.reporter.log_report(report)
        self.reporter.persist(report)
        return report
