"""
Quota Generation Module

Keeps the question bank at the exact counts the curriculum requires per
(product, test mode, section, sub-skill, difficulty): fills deficits with
validated generated questions and prunes surpluses back to a balanced shape.
"""

from .config import quota_gen_config, get_quota_gen_config, QuotaGenConfig, ConfigurationError
from .curriculum import Curriculum, CurriculumError, QuotaCell, even_split
from .database_client import QuestionDatabaseClient
from .orchestrator import QuotaGenerationOrchestrator, FillResult, RunAborted
from .pruner import BalancePruner, PrunePolicy
from .reporter import RunReporter, RunReport
from .auditor import InventoryAuditor

__all__ = [
    'quota_gen_config',
    'get_quota_gen_config',
    'QuotaGenConfig',
    'ConfigurationError',
    'Curriculum',
    'CurriculumError',
    'QuotaCell',
    'even_split',
    'QuestionDatabaseClient',
    'QuotaGenerationOrchestrator',
    'FillResult',
    'RunAborted',
    'BalancePruner',
    'PrunePolicy',
    'RunReporter',
    'RunReport',
    'InventoryAuditor'
]
