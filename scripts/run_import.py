"""
Script to run import profiles stored as JSON files
"""

import argparse
import asyncio
import json
import sys
import os
import logging
from typing import List

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from pydantic import ValidationError

from core.config import settings
from core.database import create_session_factory, create_state_engine, init_state_store
from core.exceptions import ImportPipelineError
from core.logging import setup_logging
from ingestion.delta.state_store import DeltaSyncStateStore
from ingestion.execution_store import ExecutionStore
from ingestion.runner import ImportRunner
from ingestion.sources.factory import create_source
from ingestion.targets.factory import create_target
from schemas.profile import ImportProfile

logger = logging.getLogger(__name__)


def load_profile(path: str) -> ImportProfile:
    with open(path, "r", encoding="utf-8") as f:
        return ImportProfile(**json.load(f))


async def test_profile(profile: ImportProfile) -> bool:
    """Check source and target connectivity without importing"""
    source = create_source(profile.source_type)
    target = create_target(profile.target_type)
    context = ImportRunner.build_write_context(profile)

    try:
        source_ok, source_message = await source.test(profile)
        table = context.table_name if context.connection else context.local_file.path
        target_ok, target_message = await target.test(context.connection, table)
    finally:
        await target.close()

    logger.info(f"[{profile.id}] source: {'OK' if source_ok else 'FAILED'} - {source_message}")
    logger.info(f"[{profile.id}] target: {'OK' if target_ok else 'FAILED'} - {target_message}")
    return source_ok and target_ok


async def run_imports(paths: List[str], test_only: bool = False) -> int:
    """Run every profile in order. Returns the number of failed profiles."""
    engine = create_state_engine()
    failures = 0

    try:
        await init_state_store(engine)
        session_factory = create_session_factory(engine)
        runner = ImportRunner(
            state_store=DeltaSyncStateStore(session_factory),
            execution_store=ExecutionStore(session_factory)
        )

        for path in paths:
            try:
                profile = load_profile(path)
            except (OSError, ValueError, ValidationError) as e:
                logger.error(f"Could not load profile {path}: {e}")
                failures += 1
                continue

            if test_only:
                if not await test_profile(profile):
                    failures += 1
                continue

            try:
                logger.info(f"Running import for profile: {profile.id}")
                result = await runner.run(profile)
                logger.info(
                    f"Import completed for {profile.id}: status={result.status.value}, "
                    f"read={result.rows_read}, inserted={result.rows_inserted}, "
                    f"updated={result.rows_updated}, failed={result.rows_failed}"
                )
                if result.aborted:
                    failures += 1
            except ImportPipelineError as e:
                logger.error(f"Import failed for {profile.id}: {e}")
                failures += 1

        logger.info("All import profiles processed")
    finally:
        await engine.dispose()

    return failures


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run Reef import profiles")
    parser.add_argument("profiles", nargs="+", help="Import profile JSON files")
    parser.add_argument("--test", action="store_true", help="Only test source and target connectivity")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="Logging level")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    failures = asyncio.run(run_imports(args.profiles, test_only=args.test))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
