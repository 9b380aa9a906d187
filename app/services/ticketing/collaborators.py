# app/services/ticketing/collaborators.py
"""
Narrow interfaces to the systems around the ticketing core.

Events, users, audit storage, email and operator paging all live in other
services. The core only ever talks to them through these classes; the
logging implementations are the defaults when nothing else is wired in.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from app.services.payment.provider_interface import BuyerInfo, EventInfo
from .errors import DirectoryUnavailable

logger = logging.getLogger(__name__)


class EventDirectory(ABC):
    @abstractmethod
    def get_event(self, event_id: str) -> Optional[EventInfo]:
        """Current event data, including seat capacity. None if unknown."""


class UserDirectory(ABC):
    @abstractmethod
    def get_buyer(self, user_id: str) -> Optional[BuyerInfo]:
        """The buyer's contact data and group. None if unknown."""


class AuditRecorder(ABC):
    @abstractmethod
    def record(
        self,
        action: str,
        actor_id: Optional[str],
        subject_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class ConfirmationNotifier(ABC):
    @abstractmethod
    def ticket_confirmed(self, ticket) -> None:
        """Tell the buyer their ticket is paid."""


class AlertNotifier(ABC):
    @abstractmethod
    def payment_without_ticket(
        self, ticket_id: str, correlation_id: str, reason: str
    ) -> None:
        """A customer paid and no live ticket owns the payment."""


class LoggingAuditRecorder(AuditRecorder):
    def record(self, action, actor_id, subject_id, details=None) -> None:
        logger.info(
            f"AUDIT action={action} actor={actor_id or 'system'} "
            f"subject={subject_id} details={details or {}}"
        )


class LoggingConfirmationNotifier(ConfirmationNotifier):
    def ticket_confirmed(self, ticket) -> None:
        logger.info(f"Confirmation for ticket {ticket.id} queued for user {ticket.user_id}")


class LoggingAlertNotifier(AlertNotifier):
    def payment_without_ticket(self, ticket_id, correlation_id, reason) -> None:
        logger.critical(
            f"PAYMENT WITHOUT TICKET: ticket={ticket_id} payment={correlation_id} "
            f"reason={reason}. Manual refund or ticket restore required."
        )


def _parse_datetime(value: str) -> datetime:
    # fromisoformat only accepts a trailing 'Z' from Python 3.11 on
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class HttpDirectory(EventDirectory, UserDirectory):
    """
    Event and user lookups against the internal event service.

    Authenticates with the shared internal API key in the ``x-api-key``
    header. Amounts are expected in cents.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
    ):
        self._api_key = api_key
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout
        )

    def _get(self, path: str) -> Optional[Dict[str, Any]]:
        if not self._api_key:
            logger.warning(f"INTERNAL_API_KEY not configured, calling {path} without it")
        try:
            response = self._client.get(path, headers={"x-api-key": self._api_key})
        except httpx.TimeoutException:
            logger.error(f"Timeout calling event service {path}")
            raise DirectoryUnavailable("Event service timed out")
        except httpx.HTTPError as e:
            logger.error(f"Error calling event service {path}: {e}")
            raise DirectoryUnavailable("Event service unavailable")

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.error(f"Event service {path} answered HTTP {response.status_code}")
            raise DirectoryUnavailable("Event service unavailable")
        return response.json()

    def get_event(self, event_id: str) -> Optional[EventInfo]:
        data = self._get(f"/internal/events/{event_id}")
        if data is None:
            return None
        return EventInfo(
            id=data.get("id", event_id),
            name=data.get("name", ""),
            starts_at=_parse_datetime(data["startsAt"]),
            capacity=int(data.get("capacity", 0)),
            group_prices={k: int(v) for k, v in (data.get("groupPrices") or {}).items()},
            allowed_group=data.get("allowedGroup"),
            is_active=data.get("isActive", True),
        )

    def get_buyer(self, user_id: str) -> Optional[BuyerInfo]:
        data = self._get(f"/internal/users/{user_id}")
        if data is None:
            return None
        name = f"{data.get('firstName', '')} {data.get('lastName', '')}".strip()
        return BuyerInfo(
            id=data.get("id", user_id),
            email=data.get("email", ""),
            group=data.get("group", ""),
            name=name,
        )
