"""
Run Reporter

Turns GenerationRunStats into a RunReport, logs it and optionally persists
it. Reporting never fails a run: errors are logged and swallowed here so
that persisted questions are never rolled back because of a report.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import quota_gen_config, QuotaGenConfig
from .database_client import GenerationRunStats, QuestionDatabaseClient

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    run_date: str
    product: str = ''
    test_modes: List[str] = field(default_factory=list)
    attempted: int = 0
    accepted: int = 0
    regenerated: int = 0
    rejections_by_stage: Dict[str, int] = field(default_factory=dict)
    regeneration_rate: float = 0.0
    external_calls: int = 0
    call_efficiency: Optional[float] = None
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    pruned: int = 0
    cells: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    unassigned: List[Dict[str, Any]] = field(default_factory=list)
    balance_violations: List[Dict[str, Any]] = field(default_factory=list)
    classification_fallbacks: List[str] = field(default_factory=list)
    flagged_for_review: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    aborted: bool = False
    dry_run: bool = False
    execution_time_seconds: Optional[int] = None

    @property
    def has_failures(self) -> bool:
        return bool(self.failures or self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)


class RunReporter:
    """Summarizes, logs and persists run statistics."""

    def __init__(
        self,
        config: Optional[QuotaGenConfig] = None,
        db: Optional[QuestionDatabaseClient] = None
    ):
        self.config = config or quota_gen_config
        self.db = db

    def summarize(self, stats: GenerationRunStats) -> RunReport:
        """
        Build the report for a run.

        regeneration_rate = regenerated / attempted
        call_efficiency = attempted * 2 / external_calls (one generation plus
        one verification call per item is the baseline)
        """
        try:
            attempted = stats.attempted
            cost = (
                stats.input_tokens * self.config.cost_per_input_token
                + stats.output_tokens * self.config.cost_per_output_token
            )
            return RunReport(
                run_date=stats.run_date.isoformat(),
                product=stats.product,
                test_modes=list(stats.test_modes),
                attempted=attempted,
                accepted=stats.accepted,
                regenerated=stats.regenerated,
                rejections_by_stage=dict(stats.rejected_by_stage),
                regeneration_rate=round(stats.regenerated / attempted, 4) if attempted else 0.0,
                external_calls=stats.external_calls,
                call_efficiency=(
                    round(attempted * 2 / stats.external_calls, 4)
                    if stats.external_calls else None
                ),
                input_tokens=stats.input_tokens,
                output_tokens=stats.output_tokens,
                estimated_cost_usd=round(cost, 4),
                pruned=stats.pruned,
                cells=[asdict(c) for c in stats.cells.values()],
                failures=[asdict(f) for f in stats.failures],
                unassigned=[asdict(u) for u in stats.unassigned],
                balance_violations=[asdict(v) for v in stats.balance_violations],
                classification_fallbacks=list(stats.classification_fallbacks),
                flagged_for_review=list(stats.flagged_for_review),
                errors=list(stats.errors),
                aborted=stats.aborted,
                dry_run=self.config.dry_run,
                execution_time_seconds=stats.execution_time_seconds
            )
        except Exception as e:
            logger.exception(f"Failed to build run report: {e}")
            run_date = getattr(stats, 'run_date', None) or datetime.utcnow()
            return RunReport(run_date=run_date.isoformat(), errors=[f"report error: {e}"])

    def log_report(self, report: RunReport) -> None:
        try:
            logger.info("=" * 60)
            logger.info("Quota Generation Run Complete")
            logger.info("=" * 60)
            logger.info(f"  Product: {report.product} {report.test_modes}")
            logger.info(f"  Attempted: {report.attempted}")
            logger.info(f"  Accepted: {report.accepted}")
            logger.info(f"  Regenerated: {report.regenerated} (rate {report.regeneration_rate:.1%})")
            for stage, count in sorted(report.rejections_by_stage.items()):
                logger.info(f"  Rejected [{stage}]: {count}")
            logger.info(f"  External calls: {report.external_calls} (efficiency {report.call_efficiency})")
            logger.info(f"  Estimated cost: ${report.estimated_cost_usd:.4f}")
            logger.info(f"  Pruned: {report.pruned}")
            logger.info(f"  Duration: {report.execution_time_seconds}s")
            for failure in report.failures:
                logger.error(
                    f"  FAILED {failure['cell']} slot {failure['slot']} "
                    f"after {failure['attempts']} attempts: {failure['reason']}"
                )
            for finding in report.unassigned:
                logger.warning(
                    f"  Unassigned in {finding['test_mode']}/{finding['section']}: "
                    f"{len(finding['record_ids'])} records ({finding['reason']})"
                )
            for violation in report.balance_violations:
                logger.error(f"  Balance violation: {violation['message']}")
            for section in report.classification_fallbacks:
                logger.warning(f"  Section classified by keyword fallback: {section}")
            if report.flagged_for_review:
                logger.warning(f"  Flagged for manual review: {len(report.flagged_for_review)}")
            for error in report.errors:
                logger.error(f"  Error: {error}")
            if report.aborted:
                logger.warning("  Run was aborted before all cells were processed")
            logger.info("=" * 60)
        except Exception as e:
            logger.error(f"Failed to log run report: {e}")

    def persist(self, report: RunReport) -> bool:
        """Insert the report into the runs table; False on any problem."""
        if self.config.dry_run:
            logger.info("[DRY RUN] Run report not saved to database")
            return False
        if self.db is None:
            logger.warning("No database client, run report not saved")
            return False
        try:
            self.db.insert_generation_run(json.loads(report.to_json()))
            return True
        except Exception as e:
            logger.error(f"Failed to save run report: {e}")
            return False
