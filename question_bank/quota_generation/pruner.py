"""
Balance Pruner

Trims an over-provisioned section back to quota while keeping the
sub-skill and difficulty shape balanced. Targets come from the same
even-split-with-remainder rule the curriculum uses; which records go is
decided by an explicit ordering policy.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .config import quota_gen_config, QuotaGenConfig
from .curriculum import Curriculum
from .database_client import BalanceViolation, QuestionDatabaseClient, QuestionRecord

logger = logging.getLogger(__name__)


class PrunePolicy(str, Enum):
    REMOVE_OLDEST = 'remove_oldest'
    REMOVE_NEWEST = 'remove_newest'


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _age_key(record: QuestionRecord):
    created = record.created_at or _EPOCH
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (created, record.id or '')


@dataclass
class Removal:
    record_id: str
    sub_skill: str
    difficulty: int
    created_at: Optional[datetime]
    reason: str


@dataclass
class PrunePlan:
    section_key: Tuple[str, str, str]
    policy: PrunePolicy
    section_target: int
    sub_skill_targets: Dict[str, int]
    difficulty_targets: Dict[str, Dict[int, int]]
    before: Dict[Tuple[str, int], int]
    after: Dict[Tuple[str, int], int]
    removals: List[Removal] = field(default_factory=list)
    violations: List[BalanceViolation] = field(default_factory=list)

    @property
    def record_ids(self) -> List[str]:
        return [r.record_id for r in self.removals]

    def sub_skill_count(self, sub_skill: str, after: bool = True) -> int:
        counts = self.after if after else self.before
        return sum(v for (s, _), v in counts.items() if s == sub_skill)


class BalancePruner:
    """Plans and applies balanced removals for a section."""

    def __init__(
        self,
        curriculum: Curriculum,
        db: QuestionDatabaseClient,
        config: Optional[QuotaGenConfig] = None
    ):
        self.curriculum = curriculum
        self.db = db
        self.config = config or quota_gen_config

    def prune_surplus(
        self,
        section_key: Tuple[str, str, str],
        surplus_count: Optional[int] = None,
        policy: Optional[PrunePolicy] = None
    ) -> PrunePlan:
        """
        Plan the removals that bring a section back to its balanced quota.

        Each sub-skill above its target gives up exactly its excess. Within a
        sub-skill the excess is taken one record at a time from the difficulty
        furthest above its own target, so no difficulty is cut below target.

        Args:
            section_key: (product, test_mode, section)
            surplus_count: Section-level surplus seen by the caller (logged if the
                plan differs)
            policy: Which records go first (defaults to the configured policy)

        Returns:
            PrunePlan: Removals, pre/post counts and any balance violations
        """
        product, test_mode, section = section_key
        policy = PrunePolicy(policy or self.config.prune_policy)

        section_target = self.curriculum.section_target(product, test_mode, section)
        sub_skill_targets = self.curriculum.sub_skill_targets(product, test_mode, section)
        difficulty_targets = {
            name: self.curriculum.difficulty_targets(total)
            for name, total in sub_skill_targets.items()
        }

        inventory = self.db.get_section_inventory(product, test_mode, section)
        buckets: Dict[Tuple[str, int], List[QuestionRecord]] = {}
        for record in inventory:
            if record.sub_skill in sub_skill_targets and record.difficulty in self.curriculum.difficulty_levels:
                buckets.setdefault((record.sub_skill, record.difficulty), []).append(record)

        for records in buckets.values():
            records.sort(key=_age_key, reverse=(policy == PrunePolicy.REMOVE_NEWEST))

        before = Counter({key: len(records) for key, records in buckets.items()})
        after = Counter(before)
        plan = PrunePlan(
            section_key=section_key,
            policy=policy,
            section_target=section_target,
            sub_skill_targets=sub_skill_targets,
            difficulty_targets=difficulty_targets,
            before=dict(before),
            after={}
        )

        for sub_skill, target in sub_skill_targets.items():
            current = sum(after[(sub_skill, d)] for d in self.curriculum.difficulty_levels)
            excess = current - target
            if excess <= 0:
                continue
            for _ in range(excess):
                difficulty = max(
                    self.curriculum.difficulty_levels,
                    key=lambda d: (after[(sub_skill, d)] - difficulty_targets[sub_skill][d], -d)
                )
                record = buckets[(sub_skill, difficulty)].pop(0)
                after[(sub_skill, difficulty)] -= 1
                plan.removals.append(Removal(
                    record_id=record.id,
                    sub_skill=sub_skill,
                    difficulty=difficulty,
                    created_at=record.created_at,
                    reason=(
                        f"{sub_skill} over target ({current} > {target}), "
                        f"difficulty {difficulty} surplus, {policy.value}"
                    )
                ))

        plan.after = {key: value for key, value in after.items()}
        plan.violations = self._check_balance(plan)

        if surplus_count is not None and surplus_count != len(plan.removals):
            logger.info(
                f"{test_mode}/{section}: section surplus {surplus_count}, "
                f"balanced plan removes {len(plan.removals)}"
            )
        return plan

    def _check_balance(self, plan: PrunePlan) -> List[BalanceViolation]:
        """Every sub-skill and difficulty must sit exactly on its target after pruning."""
        violations = []
        section = plan.section_key[2]
        for sub_skill, target in plan.sub_skill_targets.items():
            actual = plan.sub_skill_count(sub_skill)
            if actual != target:
                violations.append(BalanceViolation(
                    section=section, sub_skill=sub_skill, difficulty=None,
                    expected=target, actual=actual,
                    message=f"{sub_skill} has {actual} after pruning, target {target}"
                ))
                continue
            for difficulty, d_target in plan.difficulty_targets[sub_skill].items():
                d_actual = plan.after.get((sub_skill, difficulty), 0)
                if d_actual != d_target:
                    violations.append(BalanceViolation(
                        section=section, sub_skill=sub_skill, difficulty=difficulty,
                        expected=d_target, actual=d_actual,
                        message=(
                            f"{sub_skill} difficulty {difficulty} has {d_actual} "
                            f"after pruning, target {d_target}"
                        )
                    ))

        for violation in violations:
            logger.error(f"Balance violation in {section}: {violation.message}")
        return violations

    def apply(self, plan: PrunePlan) -> int:
        """
        Delete the planned records, logging each with its reason and the
        pre/post counts of its sub-skill and difficulty.

        Returns:
            int: Number of records deleted (0 in dry run)
        """
        product, test_mode, section = plan.section_key
        if not plan.removals:
            logger.info(f"{test_mode}/{section}: nothing to prune")
            return 0

        for removal in plan.removals:
            key = (removal.sub_skill, removal.difficulty)
            logger.info(
                f"Prune {removal.record_id} ({removal.created_at}): {removal.reason} | "
                f"{removal.sub_skill} {plan.sub_skill_count(removal.sub_skill, after=False)}"
                f"->{plan.sub_skill_count(removal.sub_skill)}, "
                f"d{removal.difficulty} {plan.before.get(key, 0)}->{plan.after.get(key, 0)}"
            )

        if self.config.dry_run:
            logger.info(f"[DRY RUN] Would delete {len(plan.removals)} questions from {test_mode}/{section}")
            return 0

        deleted = self.db.delete_questions(plan.record_ids)
        logger.info(f"Pruned {deleted} questions from {test_mode}/{section}")
        return deleted
