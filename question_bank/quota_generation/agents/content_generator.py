"""
Content Generator Agent

Builds a generation request for one quota cell (curriculum context, worked
examples, difficulty band, visual requirement and exclusion hints) and
parses the model's JSON response into a Candidate.
"""

import json
import logging
import re
from typing import Dict, List, Optional, Union

from ..config import quota_gen_config, QuotaGenConfig
from ..curriculum import Curriculum, QuotaCell, SubSkillSpec
from ..database_client import Candidate, GenerationFailure
from .base import BaseAgent, FATAL_API_ERRORS
from .diversity_guard import Fingerprint, SectionCategory, classify_section, exclusion_hints

logger = logging.getLogger(__name__)


OPTION_LETTERS = 'ABCDEF'
_OPTION_LABEL_RE = re.compile(r'^\s*\(?([A-F])[\)\.:]\s*', re.IGNORECASE)

REASON_MALFORMED = 'malformed_response'
REASON_SERVICE_ERROR = 'service_error'
REASON_FATAL = 'fatal_service_error'
REASON_NOT_LLM_APPROPRIATE = 'not_llm_appropriate'


def strip_option_label(option: str) -> str:
    """'B) 42' -> '42'"""
    return _OPTION_LABEL_RE.sub('', option or '').strip()


def resolve_answer_letter(answer: str, options: List[str]) -> str:
    """
    Resolve a stated answer to an option letter.

    Accepts a bare letter ('C'), a labelled option ('C) 42') or the option
    text itself ('42').

    Raises:
        ValueError: If the answer matches no option
    """
    value = (answer or '').strip()
    if not value:
        raise ValueError("Empty correct_answer")

    letters = OPTION_LETTERS[:len(options)]
    upper = value.upper().rstrip(').:')
    if len(upper) == 1 and upper in letters:
        return upper

    label = _OPTION_LABEL_RE.match(value)
    if label and label.group(1).upper() in letters:
        return label.group(1).upper()

    target = value.lower()
    for letter, option in zip(letters, options):
        if strip_option_label(option).lower() == target:
            return letter

    raise ValueError(f"correct_answer '{value[:40]}' matches no option")


class ContentGenerator(BaseAgent):
    """Generates candidate questions for quota cells."""

    SYSTEM_PROMPT = (
        "You are an experienced author of selective-entry and scholarship exam "
        "questions. You write original, unambiguous questions with exactly one "
        "correct answer and a concise, final worked solution. Return only JSON."
    )

    def __init__(
        self,
        curriculum: Curriculum,
        config: Optional[QuotaGenConfig] = None,
        api_key: str = None,
        model: str = None,
        client=None
    ):
        """
        Initialize the Content Generator.

        Args:
            curriculum: Loaded curriculum (sub-skill metadata, difficulty bands)
            config: Pipeline configuration (defaults to module config)
            api_key: OpenRouter API key (defaults to config)
            model: LLM model to use (defaults to config)
            client: Pre-built OpenAI client
        """
        self.config = config or quota_gen_config
        self.curriculum = curriculum
        self._categories: Dict[str, SectionCategory] = {}
        super().__init__(
            model=model or self.config.generation_model,
            api_key=api_key or self.config.openrouter_api_key,
            name="ContentGenerator",
            client=client
        )

    def _category(self, section: str) -> SectionCategory:
        if section not in self._categories:
            self._categories[section], _ = classify_section(section)
        return self._categories[section]

    def generate(
        self,
        cell: QuotaCell,
        exclusion_fingerprints: List[Fingerprint],
        attempt_number: int,
        previous_failures: Optional[List[str]] = None
    ) -> Union[Candidate, GenerationFailure]:
        """
        Generate one candidate for a cell.

        Args:
            cell: Target quota cell
            exclusion_fingerprints: Existing and in-run fingerprints to steer away from
            attempt_number: 1-based attempt within the slot (drives temperature)
            previous_failures: Short descriptions of earlier rejected attempts for this slot

        Returns:
            Candidate on success, GenerationFailure otherwise (never raises
            for service or parsing problems)
        """
        sub_skill = self.curriculum.get_sub_skill(cell.product, cell.section, cell.sub_skill)
        if not sub_skill.llm_appropriate:
            return GenerationFailure(
                reason=REASON_NOT_LLM_APPROPRIATE,
                detail=f"{sub_skill.name} is not generated by the model",
                attempt_number=attempt_number,
                fatal=True,
                called=False
            )

        extended_response = self._category(cell.section) == SectionCategory.WRITING
        prompt = self._build_prompt(
            cell, sub_skill, exclusion_fingerprints, previous_failures or [], extended_response
        )
        temperature = self.config.temperature_for_attempt(attempt_number)

        try:
            content = self._call_llm(
                prompt,
                system_prompt=self.SYSTEM_PROMPT,
                json_mode=True,
                temperature=temperature,
                max_tokens=self.config.generation_max_tokens
            )
        except FATAL_API_ERRORS as e:
            logger.error(f"Generation service rejected the request for {cell.label()}: {e}")
            return GenerationFailure(REASON_FATAL, str(e), attempt_number, fatal=True)
        except Exception as e:
            logger.warning(f"Generation call failed for {cell.label()}: {e}")
            return GenerationFailure(REASON_SERVICE_ERROR, str(e), attempt_number)

        try:
            return self._parse_candidate(content, cell, attempt_number, extended_response, sub_skill)
        except ValueError as e:
            logger.warning(f"Malformed generation response for {cell.label()}: {e}")
            return GenerationFailure(REASON_MALFORMED, str(e), attempt_number)

    def _build_prompt(
        self,
        cell: QuotaCell,
        sub_skill: SubSkillSpec,
        exclusions: List[Fingerprint],
        previous_failures: List[str],
        extended_response: bool
    ) -> str:
        """Build the generation request."""
        examples = json.dumps(sub_skill.examples[:3], indent=2) if sub_skill.examples else 'None'
        hints = exclusion_hints(exclusions)
        avoid_text = '\n'.join(f"- {h}" for h in hints) if hints else 'None'
        failures_text = '\n'.join(f"- {f}" for f in previous_failures) if previous_failures else 'None'

        if sub_skill.visual_required:
            visual_text = (
                f"This sub-skill REQUIRES a {sub_skill.visual_type or 'diagram'}. "
                "Provide it as a structured \"visual_spec\" object (type, dimensions, "
                "data, labels) that a renderer can draw. Do not describe the visual "
                "in prose inside question_text."
            )
        else:
            visual_text = 'No visual. Set "visual_spec" to null.'

        if extended_response:
            format_text = (
                "This is an extended-response writing prompt: set \"answer_options\" "
                "to [] and \"correct_answer\" to null. Put marking guidance in \"solution\"."
            )
        else:
            format_text = (
                "Provide exactly 4 answer options labelled A) to D) and give "
                "\"correct_answer\" as the letter of the single correct option."
            )

        return f"""Write ONE new question for the following curriculum cell.

PRODUCT: {cell.product}
SECTION: {cell.section}
SUB-SKILL: {sub_skill.name}
DESCRIPTION: {sub_skill.description or 'N/A'}
DIFFICULTY: {cell.difficulty} - {self.curriculum.difficulty_description(cell.difficulty)}

WORKED EXAMPLES (match the style, not the content):
{examples}

VISUAL: {visual_text}

FORMAT: {format_text}

AVOID REPEATING these existing topics, operands or target words:
{avoid_text}

EARLIER ATTEMPTS FOR THIS SLOT WERE REJECTED (do something different):
{failures_text}

The solution must be final and concise (under {self.config.max_solution_words or 200} words). Never
show self-corrections or recalculations in it.

Return ONLY valid JSON in this exact format:
{{
    "question_text": "...",
    "answer_options": ["A) ...", "B) ...", "C) ...", "D) ..."],
    "correct_answer": "A",
    "solution": "...",
    "visual_spec": null
}}
"""

    def _parse_candidate(
        self,
        content: str,
        cell: QuotaCell,
        attempt_number: int,
        extended_response: bool,
        sub_skill: SubSkillSpec
    ) -> Candidate:
        """Parse and validate the response shape."""
        content = (content or '').strip()
        if not content:
            raise ValueError("Empty response")

        # Clean markdown code blocks
        if content.startswith('```'):
            content = content.replace('```json', '', 1)
            content = content.replace('```', '', 1)
        if content.endswith('```'):
            content = content.rsplit('```', 1)[0]
        content = content.strip()

        start_idx = content.find('{')
        end_idx = content.rfind('}')
        if start_idx == -1 or end_idx == -1 or start_idx >= end_idx:
            raise ValueError(f"No JSON object found in response: {content[:100]}...")

        try:
            data = json.loads(content[start_idx:end_idx + 1])
        except json.JSONDecodeError:
            raise ValueError(f"Invalid JSON in response: {content[:100]}...")

        if not isinstance(data, dict):
            raise ValueError("Response JSON is not an object")

        question_text = data.get('question_text')
        if not isinstance(question_text, str) or len(question_text.strip()) < 10:
            raise ValueError("Missing or too short question_text")

        solution = data.get('solution')
        if not isinstance(solution, str) or not solution.strip():
            raise ValueError("Missing solution")

        visual_spec = data.get('visual_spec')
        if visual_spec is not None and not isinstance(visual_spec, dict):
            raise ValueError("visual_spec must be an object or null")
        if sub_skill.visual_required and not visual_spec:
            raise ValueError(f"{sub_skill.name} requires a visual_spec")

        if extended_response:
            options: List[str] = []
            correct_answer = None
        else:
            raw_options = data.get('answer_options')
            if not isinstance(raw_options, list) or len(raw_options) < 2:
                raise ValueError("answer_options must be a list of at least 2 items")
            if len(raw_options) > len(OPTION_LETTERS):
                raise ValueError(f"Too many answer options: {len(raw_options)}")
            options = [str(o).strip() for o in raw_options]
            bodies = [strip_option_label(o).lower() for o in options]
            if any(not b for b in bodies) or len(set(bodies)) != len(bodies):
                raise ValueError("answer_options must be non-empty and distinct")
            correct_answer = resolve_answer_letter(str(data.get('correct_answer') or ''), options)

        return Candidate(
            source_cell=cell,
            attempt_number=attempt_number,
            question_text=question_text.strip(),
            answer_options=options,
            correct_answer=correct_answer,
            solution_text=solution.strip(),
            visual_spec=visual_spec
        )
