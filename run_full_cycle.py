import asyncio
import logging

from autolister.db import get_session
from autolister.services.orchestrator_service import PipelineOrchestrator
from autolister.settings import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


async def run_full_cycle():
    logger.info("Starting full trend-to-listing cycle via runner script...")

    session_gen = get_session()
    db = next(session_gen)

    try:
        orchestrator = PipelineOrchestrator.from_settings(db, settings)
        summary = await orchestrator.run_full_pipeline(analyze=True)
        logger.info(f"Cycle completed: {summary.to_dict()}")
    except Exception as e:
        logger.exception(f"Fatal error during pipeline cycle: {e}")
    finally:
        db.close()

if __name__ == "__main__":
    asyncio.run(run_full_cycle())
