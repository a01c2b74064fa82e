"""Atomic transaction utilities for lifecycle operations"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Session) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    One logical operation (state change plus its audit row) commits or rolls back
    as a unit. Nested use on the same session defers the commit to the outermost
    block; any exception rolls the whole transaction back and propagates.
    """
    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
    try:
        yield session
        if transaction_depth == 0:
            session.commit()
            logger.debug("Atomic transaction committed")
        else:
            session.flush()
            logger.debug(f"Nested transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost")
    except Exception as e:
        session.rollback()
        logger.debug(f"Transaction rolled back (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))
