"""
Diversity Guard

Derives comparable fingerprints from question text and decides whether a
new question duplicates existing inventory. Rules depend on the section
category:

- any category: identical normalized text ("verbatim")
- verbal, vocabulary sub-skills: same target word and same polarity
- quantitative: same operand multiset and near-identical number-free stem
- reading: same passage and near-identical question stem, flagged for
  manual review instead of rejected
- writing: verbatim only
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ..config import quota_gen_config, QuotaGenConfig
from ..curriculum import QuotaCell
from ..database_client import QuestionDatabaseClient, QuestionRecord

logger = logging.getLogger(__name__)


class SectionCategory(str, Enum):
    QUANTITATIVE = 'quantitative'
    VERBAL = 'verbal'
    READING = 'reading'
    WRITING = 'writing'


SECTION_CATEGORIES: Dict[str, SectionCategory] = {
    # Quantitative
    'Mathematics': SectionCategory.QUANTITATIVE,
    'Numerical Reasoning': SectionCategory.QUANTITATIVE,
    'Mathematical Reasoning': SectionCategory.QUANTITATIVE,
    'Mathematics Reasoning': SectionCategory.QUANTITATIVE,
    'Numeracy': SectionCategory.QUANTITATIVE,
    'Numeracy No Calculator': SectionCategory.QUANTITATIVE,
    'Numeracy Calculator': SectionCategory.QUANTITATIVE,
    'General Ability - Quantitative': SectionCategory.QUANTITATIVE,
    # Verbal
    'Verbal Reasoning': SectionCategory.VERBAL,
    'Thinking Skills': SectionCategory.VERBAL,
    'Language Conventions': SectionCategory.VERBAL,
    'General Ability - Verbal': SectionCategory.VERBAL,
    # Reading
    'Reading': SectionCategory.READING,
    'Reading Comprehension': SectionCategory.READING,
    'Reading Reasoning': SectionCategory.READING,
    'Humanities': SectionCategory.READING,
    # Writing
    'Writing': SectionCategory.WRITING,
    'Written Expression': SectionCategory.WRITING,
}

# Checked in order; first hit wins.
CATEGORY_KEYWORDS: List[Tuple[Tuple[str, ...], SectionCategory]] = [
    (('math', 'numer', 'quantit'), SectionCategory.QUANTITATIVE),
    (('verbal', 'language', 'thinking'), SectionCategory.VERBAL),
    (('reading', 'humanit', 'comprehension'), SectionCategory.READING),
    (('writ',), SectionCategory.WRITING),
]

VOCABULARY_MARKERS = ('vocabulary', 'semantic', 'synonym', 'antonym')

# Sub-skills whose stem is the same for every question; the options carry the content.
STANDARDIZED_FORMAT_SUB_SKILLS = (
    'classification & categorization',
    'classification and categorisation',
    'odd one out',
    'analogies',
    'foreign language translation',
    'sequential ordering',
    'code breaking',
    'word manipulation',
)

TARGET_WORD_PATTERNS = [
    re.compile(r'(?:opposite|similar|synonym|antonym)(?:\s+to|\s+of)?\s+([A-Z]+)', re.IGNORECASE),
    re.compile(r'(?:meaning|definition)(?:\s+of)?\s+([A-Z]+)', re.IGNORECASE),
    re.compile(r'word\s+([A-Z]+)', re.IGNORECASE),
]

_OPPOSITE_RE = re.compile(r'opposite|antonym', re.IGNORECASE)
_ANSWER_CHOICES_RE = re.compile(r'\n\s*[A-D][\)\.:]', re.IGNORECASE)
_NUMBER_RE = re.compile(r'\d+(?:\.\d+)?')
_WHITESPACE_RE = re.compile(r'\s+')

REASON_VERBATIM = 'verbatim'
REASON_SAME_WORD = 'same word + same polarity'
REASON_SAME_OPERANDS = 'same operands + similar structure'
REASON_SAME_PASSAGE = 'same passage + similar question'


def classify_section(section_name: str) -> Tuple[SectionCategory, bool]:
    """
    Map a section name to its category.

    Returns:
        Tuple of (category, exact) where exact is False when the keyword
        fallback (or the verbal default) was used
    """
    name = (section_name or '').strip()
    if name in SECTION_CATEGORIES:
        category = SECTION_CATEGORIES[name]
        logger.info(f"Section '{name}' classified as {category.value} (exact match)")
        return category, True

    lower = name.lower()
    category = SectionCategory.VERBAL
    for keywords, candidate in CATEGORY_KEYWORDS:
        if any(k in lower for k in keywords):
            category = candidate
            break

    logger.warning(
        f"Section '{name}' not in category table, classified as "
        f"{category.value} (keyword fallback)"
    )
    return category, False


def is_vocabulary_sub_skill(sub_skill: Optional[str]) -> bool:
    lower = (sub_skill or '').lower()
    return any(marker in lower for marker in VOCABULARY_MARKERS)


def is_standardized_format(sub_skill: Optional[str]) -> bool:
    lower = (sub_skill or '').lower()
    return any(fmt in lower for fmt in STANDARDIZED_FORMAT_SUB_SKILLS)


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j - 1] + (ca != cb),
                previous[j] + 1,
                current[j - 1] + 1
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """(len(longer) - edit distance) / len(longer); 1.0 for two empty strings."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer


# ============================================================
# Fingerprints
# ============================================================

@dataclass(frozen=True)
class Fingerprint:
    """Comparable summary of a question. Recomputed from text, never stored."""
    normalized_text: str
    stem: str
    numbers: Tuple[str, ...] = ()
    target_word: Optional[str] = None
    polarity: Optional[str] = None
    passage: str = ''
    options: Tuple[str, ...] = ()
    source_id: Optional[str] = field(default=None, compare=False)
    preview: str = field(default='', compare=False)


def _normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(' ', (text or '').strip().lower())


def _extract_target_word(text: str) -> Optional[str]:
    for pattern in TARGET_WORD_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).lower()
    return None


def fingerprint(
    text: str,
    category: SectionCategory,
    answer_options: Optional[Iterable[str]] = None,
    source_id: Optional[str] = None
) -> Fingerprint:
    """
    Build the fingerprint of a question text for a category.

    Pure function of its inputs; the same text always yields an equal fingerprint.
    """
    raw = (text or '').strip()
    lowered = raw.lower()
    question_part = _ANSWER_CHOICES_RE.split(lowered)[0]
    options = tuple(sorted(o.strip() for o in (answer_options or [])))

    numbers: Tuple[str, ...] = ()
    target_word = None
    polarity = None
    passage = ''

    if category == SectionCategory.QUANTITATIVE:
        numbers = tuple(sorted(_NUMBER_RE.findall(question_part)))
        stem = _NUMBER_RE.sub('N', question_part.split('\n')[0]).strip()
    elif category == SectionCategory.READING:
        paragraphs = [p.strip() for p in re.split(r'\n\s*\n', question_part) if p.strip()]
        stem = _normalize(paragraphs[-1]) if paragraphs else ''
        passage = _normalize(' '.join(paragraphs[:-1]))
    else:
        stem = _normalize(question_part)
        if category == SectionCategory.VERBAL:
            target_word = _extract_target_word(lowered)
            if target_word:
                polarity = 'opposite' if _OPPOSITE_RE.search(lowered) else 'similar'

    return Fingerprint(
        normalized_text=_normalize(raw),
        stem=stem,
        numbers=numbers,
        target_word=target_word,
        polarity=polarity,
        passage=passage,
        options=options,
        source_id=source_id,
        preview=' '.join(raw.split())[:100]
    )


# ============================================================
# Duplicate rules
# ============================================================

@dataclass
class DuplicateVerdict:
    is_duplicate: bool
    reason: Optional[str] = None
    needs_review: bool = False
    matched: Optional[Fingerprint] = None


def _verbatim_match(candidate: Fingerprint, existing: Fingerprint, standardized: bool) -> bool:
    if candidate.normalized_text != existing.normalized_text:
        return False
    if standardized and candidate.options and existing.options:
        return candidate.options == existing.options
    return True


def _same_word_match(candidate: Fingerprint, existing: Fingerprint) -> bool:
    return (
        candidate.target_word is not None
        and candidate.target_word == existing.target_word
        and len(candidate.target_word) > 2
        and candidate.polarity == existing.polarity
    )


def _same_operands_match(candidate: Fingerprint, existing: Fingerprint, threshold: float) -> bool:
    return (
        len(candidate.numbers) >= 2
        and candidate.numbers == existing.numbers
        and similarity(candidate.stem, existing.stem) > threshold
    )


def _same_passage_match(candidate: Fingerprint, existing: Fingerprint, threshold: float) -> bool:
    return (
        bool(candidate.stem)
        and candidate.passage == existing.passage
        and similarity(candidate.stem, existing.stem) > threshold
    )


def category_rule(
    candidate_fp: Fingerprint,
    existing_fp: Fingerprint,
    category: SectionCategory,
    sub_skill: Optional[str] = None,
    similarity_threshold: float = 0.8
) -> Optional[str]:
    """Reason string if the category-specific rule matches the pair, else None."""
    if category == SectionCategory.VERBAL:
        if is_vocabulary_sub_skill(sub_skill) and _same_word_match(candidate_fp, existing_fp):
            return REASON_SAME_WORD
    elif category == SectionCategory.QUANTITATIVE:
        if _same_operands_match(candidate_fp, existing_fp, similarity_threshold):
            return REASON_SAME_OPERANDS
    elif category == SectionCategory.READING:
        if _same_passage_match(candidate_fp, existing_fp, similarity_threshold):
            return REASON_SAME_PASSAGE
    return None


def is_duplicate(
    candidate_fp: Fingerprint,
    existing_fps: Iterable[Fingerprint],
    category: SectionCategory,
    sub_skill: Optional[str] = None,
    similarity_threshold: float = 0.8,
    standardized_stem_options: bool = False
) -> DuplicateVerdict:
    """
    Check a candidate against existing fingerprints.

    The verbatim rule is evaluated against every existing fingerprint before
    any category rule. Reading matches come back with needs_review set and
    is_duplicate False. With standardized_stem_options, identical stems of
    standardized-format sub-skills are only verbatim duplicates when their
    option sets also match.
    """
    existing = list(existing_fps)
    standardized = standardized_stem_options and is_standardized_format(sub_skill)

    for fp in existing:
        if _verbatim_match(candidate_fp, fp, standardized):
            return DuplicateVerdict(True, REASON_VERBATIM, matched=fp)

    for fp in existing:
        reason = category_rule(candidate_fp, fp, category, sub_skill, similarity_threshold)
        if reason == REASON_SAME_PASSAGE:
            return DuplicateVerdict(False, reason, needs_review=True, matched=fp)
        if reason:
            return DuplicateVerdict(True, reason, matched=fp)

    return DuplicateVerdict(False)


class DiversityGuard:
    """Loads existing fingerprints for a cell and applies the duplicate rules."""

    def __init__(
        self,
        db: QuestionDatabaseClient,
        config: Optional[QuotaGenConfig] = None
    ):
        self.db = db
        self.config = config or quota_gen_config
        self._categories: Dict[str, Tuple[SectionCategory, bool]] = {}

    def category_for(self, section: str) -> Tuple[SectionCategory, bool]:
        """Classify a section once per guard and reuse the result."""
        if section not in self._categories:
            self._categories[section] = classify_section(section)
        return self._categories[section]

    def fingerprint_record(self, record: QuestionRecord) -> Fingerprint:
        category, _ = self.category_for(record.section)
        return fingerprint(
            record.question_text, category,
            answer_options=record.answer_options, source_id=record.id
        )

    def load_fingerprints(self, cell: QuotaCell) -> List[Fingerprint]:
        """
        Fresh fingerprints of every stored question for the cell's sub-skill.

        Across all difficulties, and across all test modes when cross-mode
        diversity is enabled.
        """
        records = self.db.get_sub_skill_questions(
            cell.product,
            cell.section,
            cell.sub_skill,
            test_mode=None if self.config.cross_mode_diversity else cell.test_mode
        )
        fps = [self.fingerprint_record(r) for r in records if r.question_text]
        logger.debug(f"Loaded {len(fps)} fingerprints for {cell.label()}")
        return fps

    def is_duplicate(
        self,
        candidate_fp: Fingerprint,
        existing_fps: Iterable[Fingerprint],
        category: SectionCategory,
        sub_skill: Optional[str] = None
    ) -> DuplicateVerdict:
        return is_duplicate(
            candidate_fp, existing_fps, category,
            sub_skill=sub_skill,
            similarity_threshold=self.config.similarity_threshold,
            standardized_stem_options=self.config.standardized_stem_options
        )

    def describe_exclusions(self, fps: List[Fingerprint], limit: int = 20) -> List[str]:
        return exclusion_hints(fps, limit)


def exclusion_hints(fps: List[Fingerprint], limit: int = 20) -> List[str]:
    """
    Compact "avoid these" hints for a generation request, most recent first.

    Operands for quantitative fingerprints, target words for vocabulary
    fingerprints, a text preview otherwise.
    """
    hints: List[str] = []
    seen = set()
    for fp in reversed(fps):
        if len(fp.numbers) >= 2:
            hint = f"operands {', '.join(fp.numbers)}: {fp.stem[:60]}"
        elif fp.target_word:
            hint = f"{fp.polarity} of {fp.target_word.upper()}"
        else:
            hint = fp.preview
        if hint and hint not in seen:
            seen.add(hint)
            hints.append(hint)
        if len(hints) >= limit:
            break
    return hints
