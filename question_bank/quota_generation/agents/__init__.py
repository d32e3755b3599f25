"""
Quota Generation Agents

- ContentGenerator: Builds generation requests and parses candidates
- AnswerVerifier: Independent answer-key check
- DiversityGuard: Fingerprinting and category-specific duplicate rules
"""

from .content_generator import ContentGenerator
from .answer_verifier import AnswerVerifier, VerificationResult
from .diversity_guard import (
    DiversityGuard,
    DuplicateVerdict,
    Fingerprint,
    SectionCategory,
    classify_section,
    fingerprint,
    is_duplicate
)

__all__ = [
    'ContentGenerator',
    'AnswerVerifier',
    'VerificationResult',
    'DiversityGuard',
    'DuplicateVerdict',
    'Fingerprint',
    'SectionCategory',
    'classify_section',
    'fingerprint',
    'is_duplicate'
]
