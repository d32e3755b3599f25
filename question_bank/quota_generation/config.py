"""
Quota Generation Configuration

Settings for the curriculum quota pipeline (gap analysis, generation,
validation and pruning). Every setting can be overridden via environment
variables prefixed with QUOTA_GEN_.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List

logger = logging.getLogger(__name__)


# Phrases that indicate a self-correcting reasoning trace leaked into a
# finished solution. Matched as case-insensitive substrings.
DEFAULT_ARTIFACT_MARKERS = [
    'wait, let me',
    'wait let me',
    'let me recalculate',
    'recalculate',
    'recalculating',
    'actually, let me',
    'actually, wait',
    'i need to recalculate',
    'i need to check',
    'hold on',
    'let me think again',
    "wait, that's not right",
    'let me correct',
    'i made an error',
    'i miscalculated',
    'let me redo',
    'let me double-check',
    'let me verify',
    'let me check',
    'i think i made a mistake',
    'i apologize',
    'my mistake',
    'correction:',
]

DEFAULT_HIGH_SEVERITY_MARKERS = ['recalculate', 'recalculating']


class ConfigurationError(ValueError):
    """Raised when the pipeline is started with invalid settings."""
    pass


def _env_json_list(name: str, default: list) -> list:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Invalid {name}: {raw}")
        return list(default)
    if not isinstance(value, list):
        logger.warning(f"{name} must be a JSON array, got: {raw}")
        return list(default)
    return value


@dataclass
class QuotaGenConfig:
    """Configuration for the quota generation pipeline."""

    # Retry budget
    max_attempts: int = field(
        default_factory=lambda: int(os.getenv('QUOTA_GEN_MAX_ATTEMPTS', '5'))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv('QUOTA_GEN_RETRY_DELAY', '1.0'))
    )

    # Duplicate detection / artifact scanning
    similarity_threshold: float = field(
        default_factory=lambda: float(os.getenv('QUOTA_GEN_SIMILARITY_THRESHOLD', '0.8'))
    )
    artifact_markers: List[str] = field(
        default_factory=lambda: _env_json_list('QUOTA_GEN_ARTIFACT_MARKERS', DEFAULT_ARTIFACT_MARKERS)
    )
    high_severity_markers: List[str] = field(
        default_factory=lambda: _env_json_list('QUOTA_GEN_HIGH_SEVERITY_MARKERS', DEFAULT_HIGH_SEVERITY_MARKERS)
    )
    max_solution_words: int = field(
        default_factory=lambda: int(os.getenv('QUOTA_GEN_MAX_SOLUTION_WORDS', '200'))
    )
    cross_mode_diversity: bool = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_CROSS_MODE_DIVERSITY', 'true').lower() == 'true'
    )
    # Off: identical stems are duplicates even when the options differ
    standardized_stem_options: bool = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_STANDARDIZED_STEM_OPTIONS', 'false').lower() == 'true'
    )

    # Pruning
    prune_policy: str = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_PRUNE_POLICY', 'remove_oldest')
    )

    # Concurrency
    max_concurrent_sections: int = field(
        default_factory=lambda: int(os.getenv('QUOTA_GEN_MAX_CONCURRENT_SECTIONS', '1'))
    )

    # LLM Configuration (via OpenRouter)
    generation_model: str = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_GENERATION_MODEL', 'anthropic/claude-sonnet-4')
    )
    verification_model: str = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_VERIFICATION_MODEL', 'anthropic/claude-sonnet-4')
    )
    generation_temperatures: List[float] = field(
        default_factory=lambda: _env_json_list('QUOTA_GEN_GENERATION_TEMPERATURES', [0.7, 0.9, 1.0])
    )
    verification_temperature: float = field(
        default_factory=lambda: float(os.getenv('QUOTA_GEN_VERIFICATION_TEMPERATURE', '0.0'))
    )
    generation_max_tokens: int = field(
        default_factory=lambda: int(os.getenv('QUOTA_GEN_GENERATION_MAX_TOKENS', '4000'))
    )

    # Cost estimate (USD per token)
    cost_per_input_token: float = field(
        default_factory=lambda: float(os.getenv('QUOTA_GEN_COST_PER_INPUT_TOKEN', '0.000003'))
    )
    cost_per_output_token: float = field(
        default_factory=lambda: float(os.getenv('QUOTA_GEN_COST_PER_OUTPUT_TOKEN', '0.000015'))
    )

    # Storage
    questions_table: str = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_QUESTIONS_TABLE', 'questions_v2')
    )
    runs_table: str = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_RUNS_TABLE', 'quota_generation_runs')
    )
    curriculum_path: str = field(
        default_factory=lambda: os.getenv(
            'QUOTA_GEN_CURRICULUM_PATH',
            os.path.join(
                os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
                'data', 'curriculum.json'
            )
        )
    )

    # Operational Settings
    dry_run: bool = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_DRY_RUN', 'false').lower() == 'true'
    )
    log_level: str = field(
        default_factory=lambda: os.getenv('QUOTA_GEN_LOG_LEVEL', 'INFO')
    )

    # API Keys
    openrouter_api_key: Optional[str] = field(
        default_factory=lambda: os.getenv('OPENROUTER_API_KEY')
    )

    def __post_init__(self):
        """Warn about missing keys and apply the log level."""
        if not self.openrouter_api_key:
            logger.warning("OPENROUTER_API_KEY not set - LLM calls will fail")

        self.artifact_markers = [m.lower() for m in self.artifact_markers]
        self.high_severity_markers = [m.lower() for m in self.high_severity_markers]

        logging.getLogger('question_bank.quota_generation').setLevel(
            getattr(logging, self.log_level.upper(), logging.INFO)
        )

    def temperature_for_attempt(self, attempt_number: int) -> float:
        """Temperature escalates with each regeneration, clamped to the last value."""
        if not self.generation_temperatures:
            return 0.7
        index = min(max(attempt_number, 1), len(self.generation_temperatures)) - 1
        return float(self.generation_temperatures[index])

    def validate(self, require_api_key: bool = True) -> bool:
        """Check if all required configuration is present."""
        errors = []

        if require_api_key and not self.openrouter_api_key:
            errors.append("OPENROUTER_API_KEY is required")
        if self.max_attempts < 1:
            errors.append("QUOTA_GEN_MAX_ATTEMPTS must be >= 1")
        if self.retry_delay < 0:
            errors.append("QUOTA_GEN_RETRY_DELAY must be >= 0")
        if not 0.0 < self.similarity_threshold <= 1.0:
            errors.append("QUOTA_GEN_SIMILARITY_THRESHOLD must be in (0, 1]")
        if not self.artifact_markers:
            errors.append("artifact_markers must not be empty")
        if self.prune_policy not in ('remove_oldest', 'remove_newest'):
            errors.append(f"Invalid QUOTA_GEN_PRUNE_POLICY: {self.prune_policy}")
        if self.max_concurrent_sections < 1:
            errors.append("QUOTA_GEN_MAX_CONCURRENT_SECTIONS must be >= 1")
        if self.max_solution_words < 0:
            errors.append("QUOTA_GEN_MAX_SOLUTION_WORDS must be >= 0")

        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            return False

        return True


# Singleton instance - lazily evaluated
_config_instance: Optional[QuotaGenConfig] = None


def get_quota_gen_config() -> QuotaGenConfig:
    """Get the quota generation configuration singleton."""
    global _config_instance
    if _config_instance is None:
        _config_instance = QuotaGenConfig()
    return _config_instance


# Convenience alias
quota_gen_config = get_quota_gen_config()
