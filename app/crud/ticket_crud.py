# app/crud/ticket_crud.py
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, func, update
from sqlalchemy.orm import Session

from app.models.ticket import ACTIVE_STATUSES, Ticket, TicketStatus


class CRUDTicket:
    """Queries and guarded status transitions for tickets.

    Every status write goes through ``transition``: a single conditional
    UPDATE whose WHERE clause names the statuses it may move from. Two racing
    writers (webhook and poller, possibly in different processes) can both
    issue it; the first one matches, the second updates zero rows.
    """

    def get(self, db: Session, ticket_id: str) -> Optional[Ticket]:
        """Get a ticket by ID."""
        return db.query(Ticket).filter(Ticket.id == ticket_id).first()

    def get_for_user(
        self,
        db: Session,
        ticket_id: str,
        user_id: str
    ) -> Optional[Ticket]:
        """Get a ticket by ID, only if it belongs to the user."""
        return db.query(Ticket).filter(
            and_(Ticket.id == ticket_id, Ticket.user_id == user_id)
        ).first()

    def get_by_stripe_session(self, db: Session, session_id: str) -> Optional[Ticket]:
        return db.query(Ticket).filter(Ticket.stripe_session_id == session_id).first()

    def get_by_paypal_order(self, db: Session, order_id: str) -> Optional[Ticket]:
        return db.query(Ticket).filter(Ticket.paypal_order_id == order_id).first()

    def get_by_user(self, db: Session, user_id: str) -> List[Ticket]:
        """Get all tickets for a user, newest first."""
        return db.query(Ticket).filter(
            Ticket.user_id == user_id
        ).order_by(Ticket.created_at.desc()).all()

    def get_active_for_user_event(
        self,
        db: Session,
        user_id: str,
        event_id: str
    ) -> Optional[Ticket]:
        """The ticket currently holding the user's slot for an event, if any."""
        return db.query(Ticket).filter(
            and_(
                Ticket.user_id == user_id,
                Ticket.event_id == event_id,
                Ticket.status.in_(ACTIVE_STATUSES),
            )
        ).first()

    def count_seats_taken(self, db: Session, event_id: str) -> int:
        """Count tickets that hold a seat for the event."""
        return db.query(func.count(Ticket.id)).filter(
            and_(
                Ticket.event_id == event_id,
                Ticket.status.in_(ACTIVE_STATUSES),
            )
        ).scalar() or 0

    def get_active_for_event(self, db: Session, event_id: str) -> List[Ticket]:
        """Every ticket of an event that still holds a seat."""
        return db.query(Ticket).filter(
            and_(
                Ticket.event_id == event_id,
                Ticket.status.in_(ACTIVE_STATUSES),
            )
        ).all()

    def create(self, db: Session, ticket: Ticket) -> Ticket:
        db.add(ticket)
        db.commit()
        db.refresh(ticket)
        return ticket

    def delete(self, db: Session, ticket_id: str, from_statuses: Iterable[str]) -> int:
        """Hard-delete a ticket, only while it is in one of ``from_statuses``."""
        deleted = db.query(Ticket).filter(
            and_(Ticket.id == ticket_id, Ticket.status.in_(tuple(from_statuses)))
        ).delete(synchronize_session=False)
        db.commit()
        return deleted

    def attach_provider_ids(
        self,
        db: Session,
        ticket: Ticket,
        provider: str,
        **ids
    ) -> Ticket:
        """Persist checkout correlation ids for one provider."""
        ticket.set_provider_ids(provider, **ids)
        db.add(ticket)
        db.commit()
        db.refresh(ticket)
        return ticket

    def transition(
        self,
        db: Session,
        ticket_id: str,
        from_statuses: Iterable[str],
        values: dict,
        *criteria,
    ) -> int:
        """Conditionally update a ticket. Returns the number of rows changed."""
        result = db.execute(
            update(Ticket)
            .where(
                and_(
                    Ticket.id == ticket_id,
                    Ticket.status.in_(tuple(from_statuses)),
                    *criteria,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount

    def get_expired_cancellations(self, db: Session, cutoff: datetime) -> List[Ticket]:
        """Tickets whose cancellation grace period ended before ``cutoff``."""
        return db.query(Ticket).filter(
            and_(
                Ticket.status == TicketStatus.PENDING_CANCELLATION.value,
                Ticket.cancelled_at <= cutoff,
            )
        ).all()

    def get_stale_pending(self, db: Session, cutoff: datetime) -> List[Ticket]:
        """Pending tickets not written to since ``cutoff``."""
        return db.query(Ticket).filter(
            and_(
                Ticket.status == TicketStatus.PENDING.value,
                Ticket.updated_at < cutoff,
            )
        ).all()


ticket_crud = CRUDTicket()
