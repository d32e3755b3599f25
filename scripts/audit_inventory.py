#!/usr/bin/env python3
"""
Inventory Audit Entry Point

Scans stored questions for leaked reasoning in solutions and for duplicate
pairs within each sub-skill. Reports only, unless --delete is given.

Run with: python -m scripts.audit_inventory --product "EduTest Scholarship (Year 7 Entry)"
"""

import sys
import os
import logging
import argparse
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from scripts.run_quota_generation import setup_logging


def main(argv=None):
    parser = argparse.ArgumentParser(description="Audit stored questions for artifacts and duplicates")
    parser.add_argument('--product', required=True)
    parser.add_argument('--section', action='append', dest='sections',
                        help="Section to audit (repeatable, default: all sections)")
    parser.add_argument('--test-mode', help="Restrict to one test mode (default: all)")
    parser.add_argument('--delete', action='store_true', help="Delete artifact and duplicate records")
    parser.add_argument('--curriculum', help="Path to curriculum JSON")
    args = parser.parse_args(argv)

    setup_logging()
    logger = logging.getLogger(__name__)

    logger.info("=" * 70)
    logger.info("  Question Bank Inventory Audit")
    logger.info(f"  Started: {datetime.now().isoformat()}")
    logger.info("=" * 70)

    from question_bank.supabase_factory import SupabaseFactory
    from question_bank.quota_generation.config import get_quota_gen_config
    from question_bank.quota_generation.curriculum import Curriculum, CurriculumError
    from question_bank.quota_generation.database_client import QuestionDatabaseClient
    from question_bank.quota_generation.auditor import InventoryAuditor

    config = get_quota_gen_config()
    if args.curriculum:
        config.curriculum_path = args.curriculum

    try:
        curriculum = Curriculum.from_file(config.curriculum_path)
        sections = args.sections or list(curriculum.product(args.product).sections)

        SupabaseFactory.initialize()
        auditor = InventoryAuditor(QuestionDatabaseClient(config), config)

        total_findings = 0
        deleted = 0
        for section in sections:
            report = auditor.audit_section(args.product, section, args.test_mode)
            for finding in report.findings:
                logger.info(
                    f"  [{finding.kind}] {finding.record_id} ({finding.sub_skill}): "
                    f"{finding.reason}"
                    + (f" (kept {finding.related_id})" if finding.related_id else '')
                )
            total_findings += len(report.findings)
            if args.delete:
                deleted += auditor.delete_findings(report)

        logger.info("=" * 70)
        logger.info(f"  Findings: {total_findings}")
        logger.info(f"  Deleted: {deleted}")
        logger.info("=" * 70)
        sys.exit(0)

    except (CurriculumError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
