"""
Inventory Auditor

Re-checks questions already in the store with the same rules the
validation pipeline applies to new candidates: leaked reasoning markers in
solutions, and duplicates within a (section, sub_skill). For a duplicate
pair the older record is kept.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import quota_gen_config, QuotaGenConfig
from .database_client import QuestionDatabaseClient, QuestionRecord
from .validation import ArtifactScanner
from .agents.diversity_guard import DiversityGuard, Fingerprint

logger = logging.getLogger(__name__)


@dataclass
class AuditFinding:
    record_id: str
    sub_skill: Optional[str]
    kind: str  # 'artifact' | 'duplicate' | 'review'
    reason: str
    related_id: Optional[str] = None


@dataclass
class AuditReport:
    product: str
    section: str
    test_mode: Optional[str]
    scanned: int = 0
    findings: List[AuditFinding] = field(default_factory=list)

    @property
    def deletion_ids(self) -> List[str]:
        seen, ids = set(), []
        for finding in self.findings:
            if finding.kind in ('artifact', 'duplicate') and finding.record_id not in seen:
                seen.add(finding.record_id)
                ids.append(finding.record_id)
        return ids

    def count(self, kind: str) -> int:
        return sum(1 for f in self.findings if f.kind == kind)


class InventoryAuditor:
    """Scans stored inventory for artifact leaks and duplicate pairs."""

    def __init__(
        self,
        db: QuestionDatabaseClient,
        config: Optional[QuotaGenConfig] = None
    ):
        self.db = db
        self.config = config or quota_gen_config
        self.guard = DiversityGuard(db, self.config)
        self.scanner = ArtifactScanner.from_config(self.config)

    def audit_section(
        self,
        product: str,
        section: str,
        test_mode: Optional[str] = None
    ) -> AuditReport:
        """
        Audit one section (all test modes unless test_mode is given).

        Returns:
            AuditReport: Findings; nothing is deleted here
        """
        records = self.db.get_section_questions(product, section, test_mode)
        report = AuditReport(product=product, section=section, test_mode=test_mode, scanned=len(records))
        category, _ = self.guard.category_for(section)

        by_sub_skill: Dict[Optional[str], List[QuestionRecord]] = {}
        for record in records:
            scan = self.scanner.scan(record.solution_text)
            if scan.markers:
                report.findings.append(AuditFinding(
                    record_id=record.id, sub_skill=record.sub_skill, kind='artifact',
                    reason=f"leaked_reasoning: {', '.join(scan.markers)} [severity={scan.severity}]"
                ))
            elif scan.too_long:
                report.findings.append(AuditFinding(
                    record_id=record.id, sub_skill=record.sub_skill, kind='review',
                    reason=f"solution_too_long: {scan.word_count} words"
                ))
            by_sub_skill.setdefault(record.sub_skill, []).append(record)

        for sub_skill, group in by_sub_skill.items():
            kept: List[Fingerprint] = []
            # Oldest first so the surviving record of a pair is the older one
            for record in sorted(group, key=lambda r: (r.created_at is None, r.created_at or 0, r.id or '')):
                if not record.question_text:
                    continue
                fp = self.guard.fingerprint_record(record)
                verdict = self.guard.is_duplicate(fp, kept, category, sub_skill=sub_skill)
                related = verdict.matched.source_id if verdict.matched else None
                if verdict.is_duplicate:
                    report.findings.append(AuditFinding(
                        record_id=record.id, sub_skill=sub_skill, kind='duplicate',
                        reason=verdict.reason, related_id=related
                    ))
                    continue
                if verdict.needs_review:
                    report.findings.append(AuditFinding(
                        record_id=record.id, sub_skill=sub_skill, kind='review',
                        reason=verdict.reason, related_id=related
                    ))
                kept.append(fp)

        logger.info(
            f"Audit {product}/{section}: scanned {report.scanned}, "
            f"{report.count('artifact')} artifact, {report.count('duplicate')} duplicate, "
            f"{report.count('review')} for review"
        )
        return report

    def delete_findings(self, report: AuditReport) -> int:
        """Delete artifact and duplicate records found by an audit."""
        ids = report.deletion_ids
        if not ids:
            return 0
        for finding in report.findings:
            if finding.record_id in ids:
                logger.info(f"Audit delete {finding.record_id} ({finding.sub_skill}): {finding.kind} {finding.reason}")
        if self.config.dry_run:
            logger.info(f"[DRY RUN] Would delete {len(ids)} questions from {report.section}")
            return 0
        return self.db.delete_questions(ids)
