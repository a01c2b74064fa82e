"""
Background job that expires stale offers and RFPs, clears lapsed consent
flags and purges old booking idempotency keys
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from services.lifecycle_expiry_service import run_lifecycle_expiry_sweep

logger = logging.getLogger(__name__)


async def run_lifecycle_expiry_job(session_factory: Optional[Callable[[], Session]] = None) -> Dict[str, Any]:
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    try:
        results = await asyncio.to_thread(run_lifecycle_expiry_sweep, session_factory)
        return {"success": not results["errors"], **results}
    except Exception as e:
        logger.error(f"❌ LIFECYCLE_EXPIRY_JOB_ERROR: {e}")
        return {"success": False, "error": str(e)}


if __name__ == "__main__":
    asyncio.run(run_lifecycle_expiry_job())
