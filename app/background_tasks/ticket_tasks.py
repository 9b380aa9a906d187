# app/background_tasks/ticket_tasks.py
"""
Periodic ticket sweeps.

Grace timers and pollers live in memory; these sweeps catch up on whatever
a restart dropped.
"""
import logging

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.ticketing.runtime import get_ticket_runtime
from app.services.ticketing.ticket_service import TicketService

logger = logging.getLogger(__name__)


def finalize_expired_cancellations():
    """
    Background task: cancel tickets whose grace period has run out.

    Returns: Number of tickets finalized
    """
    db = SessionLocal()
    try:
        count = TicketService(db, get_ticket_runtime()).finalize_expired_cancellations()
        if count > 0:
            logger.info(f"Finalized {count} expired ticket cancellations")
        return count

    except Exception as e:
        logger.error(f"Error in finalize_expired_cancellations task: {str(e)}")
        db.rollback()
        return 0

    finally:
        db.close()


def expire_stale_pending():
    """
    Background task: cancel tickets that never left pending.

    Disabled while PENDING_TICKET_TTL_MINUTES is 0.

    Returns: Number of tickets expired
    """
    if settings.PENDING_TICKET_TTL_MINUTES <= 0:
        return 0

    db = SessionLocal()
    try:
        count = TicketService(db, get_ticket_runtime()).expire_stale_pending(
            settings.PENDING_TICKET_TTL_MINUTES
        )
        if count > 0:
            logger.info(f"Expired {count} stale pending tickets")
        return count

    except Exception as e:
        logger.error(f"Error in expire_stale_pending task: {str(e)}")
        db.rollback()
        return 0

    finally:
        db.close()
