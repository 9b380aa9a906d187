# app/services/ticketing/grace_period.py
import logging
from datetime import datetime
from typing import Callable

from apscheduler.jobstores.base import JobLookupError

logger = logging.getLogger(__name__)


def _job_id(ticket_id: str) -> str:
    return f"grace:{ticket_id}"


class GracePeriodCanceller:
    """
    One-shot finalizer per ticket in pending_cancellation.

    Timers live in memory only. The periodic sweep in
    app/background_tasks/ticket_tasks.py finalizes whatever a restart lost.
    """

    def __init__(self, session_factory: Callable, service_factory: Callable, scheduler=None):
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._scheduler = scheduler

    def schedule(self, ticket_id: str, deadline: datetime) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self.finalize,
            trigger="date",
            run_date=deadline,
            args=[ticket_id],
            id=_job_id(ticket_id),
            replace_existing=True,
            misfire_grace_time=None,
        )

    def cancel(self, ticket_id: str) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(_job_id(ticket_id))
        except JobLookupError:
            pass

    def finalize(self, ticket_id: str) -> bool:
        db = self._session_factory()
        try:
            return self._service_factory(db).finalize_cancellation(ticket_id)
        except Exception as e:
            logger.error(f"Error finalizing cancellation of ticket {ticket_id}: {e}")
            db.rollback()
            return False
        finally:
            db.close()
