"""
Inventory Accountant

Compares the question store against quota cells and produces a signed delta
per cell. Rows that cannot be attributed to any cell (missing sub_skill or
difficulty, or values the curriculum does not know) are reported separately
and never counted towards a cell.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .curriculum import QuotaCell
from .database_client import QuestionDatabaseClient, UnassignedFinding

logger = logging.getLogger(__name__)


@dataclass
class CellDelta:
    """required_count - actual_count for one cell."""
    cell: QuotaCell
    actual_count: int
    delta: int

    @property
    def is_deficit(self) -> bool:
        return self.delta > 0

    @property
    def is_surplus(self) -> bool:
        return self.delta < 0


@dataclass
class DeltaReport:
    deltas: List[CellDelta] = field(default_factory=list)
    unassigned: List[UnassignedFinding] = field(default_factory=list)

    def deficits(self) -> List[CellDelta]:
        return [d for d in self.deltas if d.is_deficit]

    def surpluses(self) -> List[CellDelta]:
        return [d for d in self.deltas if d.is_surplus]

    def section_surplus(self) -> Dict[Tuple[str, str, str], int]:
        """Net surplus per section (actual - required), only where positive."""
        totals: Dict[Tuple[str, str, str], int] = OrderedDict()
        for d in self.deltas:
            key = d.cell.section_key
            totals[key] = totals.get(key, 0) - d.delta
        return {k: v for k, v in totals.items() if v > 0}


class InventoryAccountant:
    """Computes quota deltas from fresh store reads."""

    def __init__(self, db: QuestionDatabaseClient):
        self.db = db

    def compute_deltas(self, cells: List[QuotaCell]) -> DeltaReport:
        """
        Compute deltas for a list of cells.

        Each distinct (product, test_mode, section) is read once, fresh, per call.

        Args:
            cells: Quota cells to evaluate

        Returns:
            DeltaReport: Deltas in input order plus unassigned findings
        """
        by_section: Dict[Tuple[str, str, str], List[QuotaCell]] = OrderedDict()
        for cell in cells:
            by_section.setdefault(cell.section_key, []).append(cell)

        report = DeltaReport()
        counts: Dict[Tuple, int] = {}

        for (product, test_mode, section), section_cells in by_section.items():
            inventory = self.db.get_section_inventory(product, test_mode, section)
            valid_keys = {(c.sub_skill, c.difficulty) for c in section_cells}
            known_sub_skills = {c.sub_skill for c in section_cells}

            tally = Counter()
            missing, unknown = [], []
            for record in inventory:
                if record.sub_skill is None or record.difficulty is None:
                    missing.append(record.id)
                elif (record.sub_skill, record.difficulty) not in valid_keys:
                    unknown.append(record.id)
                else:
                    tally[(record.sub_skill, record.difficulty)] += 1

            for sub_skill, difficulty in valid_keys:
                counts[(product, test_mode, section, sub_skill, difficulty)] = \
                    tally[(sub_skill, difficulty)]

            if missing:
                logger.warning(
                    f"{len(missing)} questions in {test_mode}/{section} have no "
                    f"sub_skill or difficulty and count towards no cell"
                )
                report.unassigned.append(UnassignedFinding(
                    product=product, test_mode=test_mode, section=section,
                    record_ids=missing, reason='missing_sub_skill_or_difficulty'
                ))
            if unknown:
                unknown_ids = set(unknown)
                unknown_names = sorted({
                    r.sub_skill for r in inventory
                    if r.id in unknown_ids and r.sub_skill not in known_sub_skills
                })
                logger.warning(
                    f"{len(unknown)} questions in {test_mode}/{section} use a "
                    f"sub_skill/difficulty outside the curriculum: {unknown_names}"
                )
                report.unassigned.append(UnassignedFinding(
                    product=product, test_mode=test_mode, section=section,
                    record_ids=unknown, reason='unknown_sub_skill_or_difficulty'
                ))

        for cell in cells:
            actual = counts.get(cell.key, 0)
            report.deltas.append(CellDelta(
                cell=cell,
                actual_count=actual,
                delta=cell.required_count - actual
            ))

        logger.info(
            f"Computed {len(report.deltas)} cell deltas: "
            f"{len(report.deficits())} deficits, {len(report.surpluses())} surpluses"
        )
        return report

    def current_count(self, cell: QuotaCell) -> int:
        """Fresh count for one cell, read just before it is processed."""
        return self.db.count_questions(
            cell.product, cell.test_mode, cell.section, cell.sub_skill, cell.difficulty
        )
