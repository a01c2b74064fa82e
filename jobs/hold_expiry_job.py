"""
Background job that cancels bookings whose hold lapsed without confirmation
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from services.hold_expiry_service import run_hold_expiry_sweep

logger = logging.getLogger(__name__)


async def run_hold_expiry_job(session_factory: Optional[Callable[[], Session]] = None) -> Dict[str, Any]:
    """
    Main entry point for the hold expiry job.

    The sweep itself is synchronous; it runs in a worker thread with its own
    session so the event loop stays responsive.
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    try:
        logger.debug("🔄 HOLD_EXPIRY_JOB: starting sweep")
        results = await asyncio.to_thread(run_hold_expiry_sweep, session_factory)

        if results["cancelled"] > 0:
            logger.info(
                f"✅ HOLD_EXPIRY_JOB_COMPLETE: cancelled {results['cancelled']} of "
                f"{results['processed']} expired holds"
            )
        else:
            logger.debug(f"✅ HOLD_EXPIRY_JOB_COMPLETE: nothing to cancel ({results['processed']} checked)")

        return {"success": not results["errors"], **results}

    except Exception as e:
        logger.error(f"❌ HOLD_EXPIRY_JOB_ERROR: {e}")
        return {"success": False, "error": str(e)}


if __name__ == "__main__":
    asyncio.run(run_hold_expiry_job())
