"""
Quota Generation Database Client

Handles all question store interactions for the quota pipeline.
Uses the SupabaseFactory service role client. Inventory is never cached:
every count and fingerprint read goes to the store so that work done by
other sections (or other runs) is visible.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import List, Dict, Optional, Any, Callable
from dataclasses import dataclass, field

from ..supabase_factory import get_supabase_admin
from .config import quota_gen_config, QuotaGenConfig
from .curriculum import QuotaCell

logger = logging.getLogger(__name__)


PAGE_SIZE = 1000
DELETE_BATCH_SIZE = 50


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


# ============================================================
# Data Models
# ============================================================

@dataclass
class QuestionRecord:
    """Represents a row from the questions table."""
    id: Optional[str]
    product: str
    test_mode: str
    section: str
    sub_skill: Optional[str]
    difficulty: Optional[int]
    question_text: str = ''
    answer_options: List[str] = field(default_factory=list)
    correct_answer: Optional[str] = None
    solution_text: str = ''
    created_at: Optional[datetime] = None
    visual_spec: Optional[Dict] = None

    @classmethod
    def from_row(cls, row: Dict) -> 'QuestionRecord':
        difficulty = row.get('difficulty')
        return cls(
            id=str(row['id']) if row.get('id') is not None else None,
            product=row.get('test_type', ''),
            test_mode=row.get('test_mode', ''),
            section=row.get('section_name', ''),
            sub_skill=row.get('sub_skill') or None,
            difficulty=int(difficulty) if difficulty is not None else None,
            question_text=row.get('question_text') or '',
            answer_options=list(row.get('answer_options') or []),
            correct_answer=row.get('correct_answer'),
            solution_text=row.get('solution') or '',
            created_at=_parse_timestamp(row.get('created_at')),
            visual_spec=row.get('visual_data')
        )

    def to_row(self) -> Dict:
        row = {
            'test_type': self.product,
            'test_mode': self.test_mode,
            'section_name': self.section,
            'sub_skill': self.sub_skill,
            'difficulty': self.difficulty,
            'question_text': self.question_text,
            'answer_options': self.answer_options or None,
            'correct_answer': self.correct_answer,
            'solution': self.solution_text,
            'has_visual': self.visual_spec is not None,
            'visual_data': self.visual_spec,
        }
        if self.id:
            row['id'] = self.id
        return row


@dataclass
class Candidate:
    """An in-flight generated question for one cell attempt."""
    source_cell: QuotaCell
    attempt_number: int
    question_text: str
    answer_options: List[str]
    correct_answer: Optional[str]
    solution_text: str
    visual_spec: Optional[Dict] = None

    @property
    def product(self) -> str:
        return self.source_cell.product

    @property
    def test_mode(self) -> str:
        return self.source_cell.test_mode

    @property
    def section(self) -> str:
        return self.source_cell.section

    @property
    def sub_skill(self) -> str:
        return self.source_cell.sub_skill

    @property
    def difficulty(self) -> int:
        return self.source_cell.difficulty

    @property
    def is_multiple_choice(self) -> bool:
        return bool(self.answer_options)

    def preview(self, length: int = 120) -> str:
        text = ' '.join(self.question_text.split())
        return text if len(text) <= length else text[:length] + '...'

    def to_record(self) -> QuestionRecord:
        return QuestionRecord(
            id=None,
            product=self.product,
            test_mode=self.test_mode,
            section=self.section,
            sub_skill=self.sub_skill,
            difficulty=self.difficulty,
            question_text=self.question_text,
            answer_options=list(self.answer_options),
            correct_answer=self.correct_answer,
            solution_text=self.solution_text,
            visual_spec=self.visual_spec
        )


@dataclass
class GenerationFailure:
    """Content Generator could not produce a usable candidate."""
    reason: str
    detail: str = ''
    attempt_number: int = 0
    fatal: bool = False
    called: bool = True


@dataclass
class SlotFailure:
    """A deficit slot that was not filled."""
    cell: str
    slot: int
    attempts: int
    reason: str


@dataclass
class UnassignedFinding:
    """Stored records that satisfy no quota cell."""
    product: str
    test_mode: str
    section: str
    record_ids: List[str]
    reason: str


@dataclass
class BalanceViolation:
    """Pruning could not restore a sub-skill or difficulty to its target."""
    section: str
    sub_skill: str
    difficulty: Optional[int]
    expected: int
    actual: int
    message: str


@dataclass
class CellStats:
    """Per-cell breakdown for the run report."""
    cell: str
    required: int = 0
    actual_before: int = 0
    attempted: int = 0
    accepted: int = 0
    regenerated: int = 0
    failed_slots: int = 0
    rejections: Dict[str, int] = field(default_factory=dict)


@dataclass
class GenerationRunStats:
    """
    Accumulator for one generation run.

    Mutated by the orchestrator from several section tasks at once, so every
    mutation goes through the lock.
    """
    run_date: datetime
    product: str = ''
    test_modes: List[str] = field(default_factory=list)
    attempted: int = 0
    accepted: int = 0
    regenerated: int = 0
    rejected_by_stage: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    external_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    pruned: int = 0
    cells: Dict[str, CellStats] = field(default_factory=dict)
    failures: List[SlotFailure] = field(default_factory=list)
    unassigned: List[UnassignedFinding] = field(default_factory=list)
    balance_violations: List[BalanceViolation] = field(default_factory=list)
    classification_fallbacks: List[str] = field(default_factory=list)
    flagged_for_review: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    aborted: bool = False
    execution_time_seconds: Optional[int] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _cell(self, cell: QuotaCell) -> CellStats:
        label = cell.label()
        if label not in self.cells:
            self.cells[label] = CellStats(cell=label, required=cell.required_count)
        return self.cells[label]

    def record_cell_start(self, cell: QuotaCell, actual_count: int) -> None:
        with self._lock:
            self._cell(cell).actual_before = actual_count

    def record_attempt(self, cell: QuotaCell, attempt_number: int) -> None:
        with self._lock:
            stats = self._cell(cell)
            self.attempted += 1
            stats.attempted += 1
            if attempt_number > 1:
                self.regenerated += 1
                stats.regenerated += 1

    def record_acceptance(self, cell: QuotaCell) -> None:
        with self._lock:
            self.accepted += 1
            self._cell(cell).accepted += 1

    def record_rejection(self, cell: QuotaCell, state: str) -> None:
        with self._lock:
            self.rejected_by_stage[state] += 1
            rejections = self._cell(cell).rejections
            rejections[state] = rejections.get(state, 0) + 1

    def record_failure(self, cell: QuotaCell, failure: SlotFailure) -> None:
        with self._lock:
            self.failures.append(failure)
            self._cell(cell).failed_slots += 1

    def record_usage(self, calls: int, input_tokens: int, output_tokens: int) -> None:
        with self._lock:
            self.external_calls += calls
            self.input_tokens += input_tokens
            self.output_tokens += output_tokens

    def record_finding(self, kind: str, finding: Any) -> None:
        """Append to one of the finding lists (unassigned, balance_violations, ...)."""
        with self._lock:
            getattr(self, kind).append(finding)

    def record_pruned(self, count: int) -> None:
        with self._lock:
            self.pruned += count


# ============================================================
# Database Client
# ============================================================

class QuestionDatabaseClient:
    """Supabase database client for the question inventory."""

    def __init__(self, config: Optional[QuotaGenConfig] = None):
        self.config = config or quota_gen_config
        self.client = get_supabase_admin()
        if not self.client:
            raise RuntimeError("Supabase admin client not available")
        self.table = self.config.questions_table

    def _select_all(self, build_query: Callable[[], Any]) -> List[Dict]:
        """Page through a select; Supabase caps a single response at 1000 rows."""
        rows = []
        start = 0
        while True:
            response = build_query().range(start, start + PAGE_SIZE - 1).execute()
            batch = response.data or []
            rows.extend(batch)
            if len(batch) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    # ============================================================
    # INVENTORY READS
    # ============================================================

    def get_section_inventory(
        self,
        product: str,
        test_mode: str,
        section: str
    ) -> List[QuestionRecord]:
        """
        Fetch the lightweight inventory of a section.

        Returns:
            List[QuestionRecord]: Records with id, sub_skill, difficulty and
            created_at populated, ordered by created_at
        """
        rows = self._select_all(
            lambda: self.client.table(self.table)
            .select('id, test_type, test_mode, section_name, sub_skill, difficulty, created_at')
            .eq('test_type', product)
            .eq('test_mode', test_mode)
            .eq('section_name', section)
            .order('created_at')
        )
        return [QuestionRecord.from_row(row) for row in rows]

    def count_questions(
        self,
        product: str,
        test_mode: str,
        section: str,
        sub_skill: str,
        difficulty: int
    ) -> int:
        """Exact count for one cell."""
        response = self.client.table(self.table) \
            .select('id', count='exact') \
            .eq('test_type', product) \
            .eq('test_mode', test_mode) \
            .eq('section_name', section) \
            .eq('sub_skill', sub_skill) \
            .eq('difficulty', difficulty) \
            .execute()
        return response.count or 0

    def get_sub_skill_questions(
        self,
        product: str,
        section: str,
        sub_skill: str,
        test_mode: Optional[str] = None
    ) -> List[QuestionRecord]:
        """
        Fetch full question rows for a sub-skill, used for fingerprinting.

        Args:
            test_mode: Restrict to one mode; None reads across every mode
        """
        def build():
            query = self.client.table(self.table) \
                .select('*') \
                .eq('test_type', product) \
                .eq('section_name', section) \
                .eq('sub_skill', sub_skill)
            if test_mode:
                query = query.eq('test_mode', test_mode)
            return query.order('created_at')

        return [QuestionRecord.from_row(row) for row in self._select_all(build)]

    def get_section_questions(
        self,
        product: str,
        section: str,
        test_mode: Optional[str] = None
    ) -> List[QuestionRecord]:
        """Fetch full question rows for a whole section (audits)."""
        def build():
            query = self.client.table(self.table) \
                .select('*') \
                .eq('test_type', product) \
                .eq('section_name', section)
            if test_mode:
                query = query.eq('test_mode', test_mode)
            return query.order('created_at')

        return [QuestionRecord.from_row(row) for row in self._select_all(build)]

    # ============================================================
    # WRITES
    # ============================================================

    def insert_question(self, record: QuestionRecord) -> str:
        """
        Insert an accepted question.

        Returns:
            str: The new record id
        """
        response = self.client.table(self.table).insert(record.to_row()).execute()
        if not response.data:
            raise RuntimeError(f"Insert returned no data for {record.section}/{record.sub_skill}")
        record_id = str(response.data[0]['id'])
        logger.debug(f"Inserted question {record_id}")
        return record_id

    def delete_questions(self, ids: List[str]) -> int:
        """
        Delete questions by id in batches.

        Returns:
            int: Number of ids submitted for deletion
        """
        deleted = 0
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            batch = ids[start:start + DELETE_BATCH_SIZE]
            self.client.table(self.table).delete().in_('id', batch).execute()
            deleted += len(batch)
            logger.debug(f"Deleted batch of {len(batch)} questions")
        return deleted

    def insert_generation_run(self, report: Dict) -> None:
        """Persist a run report."""
        self.client.table(self.config.runs_table).insert(report).execute()
        logger.info("Run report saved to database")
