#!/usr/bin/env python3
"""
Quota Generation Entry Point

Brings a product's question inventory to the curriculum quota: fills
deficits with validated generated questions and, with --prune, trims
surpluses back to a balanced shape.

Run with: python -m scripts.run_quota_generation --product "EduTest Scholarship (Year 7 Entry)"

Environment Variables:
    QUOTA_GEN_MAX_ATTEMPTS: Attempts per missing question (default: 5)
    QUOTA_GEN_PRUNE_POLICY: remove_oldest | remove_newest (default: remove_oldest)
    QUOTA_GEN_MAX_CONCURRENT_SECTIONS: Sections processed at once (default: 1)
    QUOTA_GEN_DRY_RUN: Set to 'true' for dry run mode
    QUOTA_GEN_LOG_LEVEL: Logging level (default: INFO)
"""

import sys
import os
import logging
import argparse
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def setup_logging():
    """Configure logging for the script."""
    log_level = os.getenv('QUOTA_GEN_LOG_LEVEL', 'INFO').upper()

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Reduce noise from third-party libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Fill and balance question inventory against curriculum quotas")
    parser.add_argument('--product', required=True, help="Product name as it appears in the curriculum")
    parser.add_argument('--test-mode', action='append', dest='test_modes',
                        help="Test mode to process (repeatable, default: all modes of the product)")
    parser.add_argument('--section', action='append', dest='sections',
                        help="Section to process (repeatable, default: all sections)")
    parser.add_argument('--prune', action='store_true', help="Prune surplus after filling deficits")
    parser.add_argument('--prune-policy', choices=['remove_oldest', 'remove_newest'],
                        help="Which records pruning removes first")
    parser.add_argument('--dry-run', action='store_true', help="Generate and validate but do not write")
    parser.add_argument('--max-attempts', type=int, help="Attempts per missing question")
    parser.add_argument('--curriculum', help="Path to curriculum JSON")
    parser.add_argument('--report-file', help="Write the run report(s) as JSON to this path")
    return parser.parse_args(argv)


def main(argv=None):
    """Run the quota generation workflow."""
    args = parse_args(argv)
    setup_logging()
    logger = logging.getLogger(__name__)

    logger.info("=" * 70)
    logger.info("  Question Bank Quota Generation")
    logger.info(f"  Started: {datetime.now().isoformat()}")
    logger.info("=" * 70)

    # Import after path setup
    from question_bank.supabase_factory import SupabaseFactory
    from question_bank.quota_generation.config import get_quota_gen_config, ConfigurationError
    from question_bank.quota_generation.curriculum import Curriculum, CurriculumError
    from question_bank.quota_generation.orchestrator import QuotaGenerationOrchestrator
    from question_bank.quota_generation.pruner import PrunePolicy

    config = get_quota_gen_config()
    if args.dry_run:
        config.dry_run = True
    if args.max_attempts:
        config.max_attempts = args.max_attempts
    if args.curriculum:
        config.curriculum_path = args.curriculum

    try:
        curriculum = Curriculum.from_file(config.curriculum_path)
        test_modes = args.test_modes or curriculum.product(args.product).test_modes

        logger.info("Initializing Supabase connection...")
        SupabaseFactory.initialize()

        logger.info("Configuration:")
        logger.info(f"  Product: {args.product}")
        logger.info(f"  Test modes: {test_modes}")
        logger.info(f"  Sections: {args.sections or 'all'}")
        logger.info(f"  Max attempts: {config.max_attempts}")
        logger.info(f"  Generation model: {config.generation_model}")
        logger.info(f"  Verification model: {config.verification_model}")
        logger.info(f"  Dry run: {config.dry_run}")

        orchestrator = QuotaGenerationOrchestrator(curriculum=curriculum, config=config)
        policy = PrunePolicy(args.prune_policy) if args.prune_policy else None

        reports = []
        try:
            for test_mode in test_modes:
                reports.append(orchestrator.run(
                    args.product,
                    test_mode,
                    sections=args.sections,
                    prune=args.prune,
                    prune_policy=policy
                ))
        except KeyboardInterrupt:
            orchestrator.abort()
            logger.warning("Interrupted - remaining test modes skipped")

        if args.report_file:
            with open(args.report_file, 'w', encoding='utf-8') as f:
                f.write('[\n' + ',\n'.join(r.to_json() for r in reports) + '\n]\n')
            logger.info(f"Report written to {args.report_file}")

        # Exit codes for monitoring
        if any(r.has_failures for r in reports):
            logger.warning("Run finished with unfilled slots or errors")
            sys.exit(1)

        logger.info("Quota generation completed successfully")
        sys.exit(0)

    except (ConfigurationError, CurriculumError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
