"""
Script to run a refresh of every enabled table (or one table) to completion
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import SyncException
from core.logging import setup_logging
from refresh.runtime import RefreshRuntime

logger = logging.getLogger(__name__)


async def run_refresh(table_name=None, force=False) -> int:
    """Run the orchestrator, then drain continuations and webhooks in-process"""
    runtime = RefreshRuntime.create(settings)
    exit_code = 0
    
    try:
        async with runtime.database.session() as session:
            orchestrator = runtime.orchestrator(session)
            if table_name:
                try:
                    outcome = await orchestrator.refresh_table(table_name, force=force)
                    logger.info(f"{outcome.table}: {outcome.message}")
                except SyncException as e:
                    logger.error(f"{table_name}: {e.message} ({e.code})")
                    exit_code = 1
            else:
                summary = await orchestrator.run_all(force=force)
                for outcome in summary.results:
                    if outcome.success:
                        logger.info(f"{outcome.table}: {outcome.rows_processed} rows - {outcome.message}")
                    else:
                        logger.warning(f"{outcome.table}: {outcome.error} ({outcome.code})")
                if any(not r.success and not r.skipped for r in summary.results):
                    exit_code = 1
        
        processed = await runtime.continuations.run_pending()
        if runtime.continuations.failed:
            exit_code = 1
        logger.info(f"Processed {processed} continuation(s)")
        
        stats = await runtime.drain_webhooks()
        logger.info(f"Webhooks: {stats}")
    finally:
        await runtime.close()
    
    return exit_code


def main():
    parser = argparse.ArgumentParser(description="Refresh warehouse tables")
    parser.add_argument("--table", dest="table_name", help="Refresh a single table")
    parser.add_argument("--force", action="store_true", help="Ignore the minimum refresh interval")
    args = parser.parse_args()
    
    setup_logging(settings)
    sys.exit(asyncio.run(run_refresh(args.table_name, args.force)))


if __name__ == "__main__":
    main()
