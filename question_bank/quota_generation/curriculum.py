"""
Curriculum Quota Model

Loads the curriculum specification (products, test modes, sections and
their ordered sub-skills) from JSON and derives the per-cell quotas the
rest of the pipeline works against.

A section's total for a test mode is split evenly across its sub-skills in
curriculum order, and each sub-skill's share is split evenly across the
difficulty levels. Remainders go to the earliest entries.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


DEFAULT_DIFFICULTY_LEVELS = [1, 2, 3]

DEFAULT_DIFFICULTY_DESCRIPTIONS = {
    1: 'Easy - accessible to most students, single-step reasoning',
    2: 'Medium - requires multi-step reasoning or careful reading',
    3: 'Hard - challenging for strong students, multiple concepts combined',
}

_MODE_FAMILY_RE = re.compile(r'^(.*)_\d+$')


class CurriculumError(ValueError):
    """Raised for unknown products/sections/sub-skills or malformed curriculum data."""
    pass


def even_split(total: int, n: int) -> List[int]:
    """
    Split total into n integer shares.

    base = total // n and the first (total % n) shares get base + 1.
    """
    if n <= 0:
        raise ValueError(f"Cannot split {total} into {n} parts")
    if total < 0:
        raise ValueError(f"Cannot split a negative total: {total}")
    base, remainder = divmod(total, n)
    return [base + 1 if i < remainder else base for i in range(n)]


def mode_family(test_mode: str) -> str:
    """practice_3 -> practice; modes without a numeric suffix are their own family."""
    match = _MODE_FAMILY_RE.match(test_mode)
    return match.group(1) if match else test_mode


# ============================================================
# Data Models
# ============================================================

@dataclass(frozen=True)
class QuotaCell:
    """One (product, test_mode, section, sub_skill, difficulty) combination."""
    product: str
    test_mode: str
    section: str
    sub_skill: str
    difficulty: int
    required_count: int

    @property
    def key(self) -> Tuple[str, str, str, str, int]:
        return (self.product, self.test_mode, self.section, self.sub_skill, self.difficulty)

    @property
    def section_key(self) -> Tuple[str, str, str]:
        return (self.product, self.test_mode, self.section)

    def label(self) -> str:
        return f"{self.test_mode}/{self.section}/{self.sub_skill}/d{self.difficulty}"


@dataclass
class SubSkillSpec:
    """Sub-skill metadata used to build generation requests."""
    name: str
    description: str = ''
    examples: List[Dict] = field(default_factory=list)
    visual_required: bool = False
    visual_type: Optional[str] = None
    llm_appropriate: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> 'SubSkillSpec':
        if 'name' not in data:
            raise CurriculumError(f"Sub-skill entry without a name: {data}")
        return cls(
            name=data['name'],
            description=data.get('description', ''),
            examples=list(data.get('examples', [])),
            visual_required=bool(data.get('visual_required', False)),
            visual_type=data.get('visual_type'),
            llm_appropriate=bool(data.get('llm_appropriate', True)),
        )


@dataclass
class SectionSpec:
    """A section with its ordered sub-skills and per-mode totals."""
    name: str
    sub_skills: List[SubSkillSpec]
    total_questions: Dict[str, int]

    @property
    def sub_skill_names(self) -> List[str]:
        return [s.name for s in self.sub_skills]

    def total_for_mode(self, test_mode: str) -> int:
        """Resolve the total by exact mode, then mode family, then 'default'."""
        for key in (test_mode, mode_family(test_mode), 'default'):
            if key in self.total_questions:
                return int(self.total_questions[key])
        raise CurriculumError(
            f"No question total for section '{self.name}' in mode '{test_mode}'"
        )


@dataclass
class ProductSpec:
    """A product (exam) with its test modes and sections."""
    name: str
    test_modes: List[str]
    sections: Dict[str, SectionSpec]


# ============================================================
# Curriculum
# ============================================================

class Curriculum:
    """Read-only curriculum loaded once per run."""

    def __init__(
        self,
        products: Dict[str, ProductSpec],
        difficulty_levels: Optional[List[int]] = None,
        difficulty_descriptions: Optional[Dict[int, str]] = None
    ):
        self.products = products
        self.difficulty_levels = list(difficulty_levels or DEFAULT_DIFFICULTY_LEVELS)
        self.difficulty_descriptions = dict(difficulty_descriptions or DEFAULT_DIFFICULTY_DESCRIPTIONS)

    @classmethod
    def from_file(cls, path: str) -> 'Curriculum':
        """Load a curriculum JSON document."""
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CurriculumError(f"Could not load curriculum from {path}: {e}") from e

        curriculum = cls.from_dict(data)
        logger.info(
            f"Loaded curriculum from {path}: "
            f"{len(curriculum.products)} products"
        )
        return curriculum

    @classmethod
    def from_dict(cls, data: Dict) -> 'Curriculum':
        products = {}
        for product_name, product_data in data.get('products', {}).items():
            sections = {}
            for section_name, section_data in product_data.get('sections', {}).items():
                sub_skills = [
                    SubSkillSpec.from_dict(s) for s in section_data.get('sub_skills', [])
                ]
                if not sub_skills:
                    raise CurriculumError(
                        f"Section '{section_name}' of '{product_name}' has no sub-skills"
                    )
                names = [s.name for s in sub_skills]
                if len(set(names)) != len(names):
                    raise CurriculumError(
                        f"Section '{section_name}' of '{product_name}' lists a sub-skill twice"
                    )
                sections[section_name] = SectionSpec(
                    name=section_name,
                    sub_skills=sub_skills,
                    total_questions=dict(section_data.get('total_questions', {}))
                )
            products[product_name] = ProductSpec(
                name=product_name,
                test_modes=list(product_data.get('test_modes', [])),
                sections=sections
            )

        descriptions = data.get('difficulty_descriptions')
        if descriptions:
            descriptions = {int(k): v for k, v in descriptions.items()}

        return cls(
            products=products,
            difficulty_levels=data.get('difficulty_levels'),
            difficulty_descriptions=descriptions
        )

    # ============================================================
    # LOOKUPS
    # ============================================================

    def product(self, product: str) -> ProductSpec:
        if product not in self.products:
            raise CurriculumError(f"Unknown product: {product}")
        return self.products[product]

    def section(self, product: str, section: str) -> SectionSpec:
        spec = self.product(product)
        if section not in spec.sections:
            raise CurriculumError(f"Unknown section '{section}' for product '{product}'")
        return spec.sections[section]

    def sub_skills(self, product: str, section: str) -> List[SubSkillSpec]:
        return list(self.section(product, section).sub_skills)

    def get_sub_skill(self, product: str, section: str, sub_skill: str) -> SubSkillSpec:
        for spec in self.section(product, section).sub_skills:
            if spec.name == sub_skill:
                return spec
        raise CurriculumError(
            f"Unknown sub-skill '{sub_skill}' in section '{section}' of '{product}'"
        )

    def difficulty_description(self, level: int) -> str:
        return self.difficulty_descriptions.get(level, f"Difficulty level {level}")

    # ============================================================
    # QUOTAS
    # ============================================================

    def section_target(self, product: str, test_mode: str, section: str) -> int:
        """Total questions required for a section in a test mode."""
        return self.section(product, section).total_for_mode(test_mode)

    def sub_skill_targets(self, product: str, test_mode: str, section: str) -> Dict[str, int]:
        """Per-sub-skill targets in curriculum order."""
        spec = self.section(product, section)
        shares = even_split(spec.total_for_mode(test_mode), len(spec.sub_skills))
        return dict(zip(spec.sub_skill_names, shares))

    def difficulty_targets(self, sub_skill_total: int) -> Dict[int, int]:
        """Split a sub-skill's target across the difficulty enumeration."""
        shares = even_split(sub_skill_total, len(self.difficulty_levels))
        return dict(zip(self.difficulty_levels, shares))

    def cells(
        self,
        product: str,
        test_mode: str,
        sections: Optional[List[str]] = None
    ) -> List[QuotaCell]:
        """
        Build every quota cell for a product/mode.

        Args:
            product: Product name
            test_mode: Test mode (e.g. 'practice_1')
            sections: Restrict to these sections (default: all, in curriculum order)

        Returns:
            List[QuotaCell]: One cell per (section, sub_skill, difficulty)
        """
        spec = self.product(product)
        if spec.test_modes and test_mode not in spec.test_modes:
            raise CurriculumError(f"Unknown test mode '{test_mode}' for product '{product}'")

        section_names = sections if sections else list(spec.sections)
        cells = []
        for section_name in section_names:
            targets = self.sub_skill_targets(product, test_mode, section_name)
            for sub_skill, sub_total in targets.items():
                for difficulty, count in self.difficulty_targets(sub_total).items():
                    cells.append(QuotaCell(
                        product=product,
                        test_mode=test_mode,
                        section=section_name,
                        sub_skill=sub_skill,
                        difficulty=difficulty,
                        required_count=count
                    ))
        return cells
