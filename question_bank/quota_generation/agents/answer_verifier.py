"""
Answer Verifier Agent

Independent second opinion on a candidate's answer key. The verifier sees
only the question, its options and any visual specification; never the
generator's solution or stated answer.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from ..config import quota_gen_config, QuotaGenConfig
from ..database_client import Candidate
from .base import BaseAgent
from .content_generator import OPTION_LETTERS

logger = logging.getLogger(__name__)


_ANSWER_RE = re.compile(r'ANSWER\s*[:\-]\s*\(?([A-F])\b', re.IGNORECASE)


@dataclass
class VerificationResult:
    """Outcome of an independent verification."""
    available: bool
    answer: Optional[str] = None
    expected: Optional[str] = None
    method: str = 'model'
    detail: str = ''

    @property
    def agrees(self) -> bool:
        if self.method == 'skipped':
            return True
        return self.available and self.answer is not None and self.answer == self.expected


class AnswerVerifier(BaseAgent):
    """Solves candidate questions from scratch and compares the result."""

    SYSTEM_PROMPT = (
        "You are a careful exam marker. Solve the question yourself from "
        "scratch, then state the single correct option."
    )

    def __init__(
        self,
        config: Optional[QuotaGenConfig] = None,
        api_key: str = None,
        model: str = None,
        client=None
    ):
        self.config = config or quota_gen_config
        super().__init__(
            model=model or self.config.verification_model,
            api_key=api_key or self.config.openrouter_api_key,
            name="AnswerVerifier",
            client=client
        )

    def verify(self, candidate: Candidate) -> VerificationResult:
        """
        Independently solve the candidate and compare with its answer key.

        Extended-response candidates have no objective answer and are skipped
        without a call. An unusable response or a failed call yields
        available=False, which callers must treat as a rejection.
        """
        if not candidate.is_multiple_choice:
            return VerificationResult(available=True, method='skipped',
                                      detail='extended response has no answer key')

        prompt = self._build_prompt(candidate)
        try:
            content = self._call_llm(
                prompt,
                system_prompt=self.SYSTEM_PROMPT,
                temperature=self.config.verification_temperature,
                max_tokens=1500
            )
        except Exception as e:
            logger.warning(f"Verification call failed: {e}")
            return VerificationResult(available=False, expected=candidate.correct_answer,
                                      detail=f"verification call failed: {e}")

        answer = self.parse_answer(content, len(candidate.answer_options))
        if answer is None:
            logger.warning(f"Could not parse verifier answer: {content[-120:]!r}")
            return VerificationResult(available=False, expected=candidate.correct_answer,
                                      detail='unparseable verifier response')

        result = VerificationResult(available=True, answer=answer, expected=candidate.correct_answer)
        if not result.agrees:
            logger.info(
                f"Verifier disagrees: stated {candidate.correct_answer}, "
                f"independently solved {answer}"
            )
        return result

    def _build_prompt(self, candidate: Candidate) -> str:
        options = '\n'.join(candidate.answer_options)
        visual = ''
        if candidate.visual_spec:
            visual = f"\nVISUAL (structured description):\n{json.dumps(candidate.visual_spec, indent=2)}\n"

        return f"""Solve this {candidate.section} question independently.

QUESTION:
{candidate.question_text}
{visual}
OPTIONS:
{options}

Work through it briefly, then finish with a final line of the form:
ANSWER: <letter>
"""

    @staticmethod
    def parse_answer(content: str, option_count: int) -> Optional[str]:
        """Last 'ANSWER: X' in the response, restricted to valid option letters."""
        matches = _ANSWER_RE.findall(content or '')
        if not matches:
            return None
        letter = matches[-1].upper()
        return letter if letter in OPTION_LETTERS[:option_count] else None
