"""
Create the state store tables (delta sync hashes, execution records)
"""

import argparse
import asyncio
import logging
import sys
import os
from typing import Optional

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_state_engine, init_state_store
from core.logging import setup_logging

logger = logging.getLogger(__name__)


async def init_database(url: Optional[str] = None):
    engine = create_state_engine(url, echo=settings.LOG_LEVEL == "DEBUG")
    logger.info(f"Initialising state store at {engine.url.render_as_string(hide_password=True)} ({settings.ENVIRONMENT})")

    try:
        await init_state_store(engine)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create Reef state store tables")
    parser.add_argument("--url", help="State store URL (defaults to DATABASE_URL)")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(init_database(args.url))
