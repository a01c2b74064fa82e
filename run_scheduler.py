"""
Process entry point: creates the schema if needed, seeds default feature
flags and runs the lifecycle sweeps until interrupted.
"""

import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

_project_root = os.path.dirname(os.path.abspath(__file__))
load_dotenv(os.path.join(_project_root, '.env'))

from config import Config  # noqa: E402  (environment must be loaded first)

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from database import SessionLocal, create_tables, test_connection  # noqa: E402
from jobs.scheduler import LifecycleScheduler  # noqa: E402
from services.audit_logger import AuditContext  # noqa: E402
from services.feature_flags import seed_default_flags  # noqa: E402


def bootstrap():
    """Create tables and provision any missing default flags"""
    if not test_connection():
        raise RuntimeError(f"Database not reachable ({Config.database_backend()})")
    create_tables()
    session = SessionLocal()
    try:
        seeded = seed_default_flags(session, AuditContext.system("bootstrap"))
        if seeded.value:
            logger.info(f"🚩 Seeded {seeded.value} default feature flags")
    finally:
        session.close()


async def main():
    Config.log_environment_config()
    bootstrap()

    scheduler = LifecycleScheduler(SessionLocal)
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms
            pass

    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        logger.info("👋 Lifecycle worker shut down")


if __name__ == "__main__":
    asyncio.run(main())
