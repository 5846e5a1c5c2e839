from sqlalchemy.orm import Session
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
import logging
import json

from models.event import DomainEvent, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent, Dict[str, Any]], None]


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def record_event(
    db: Session,
    event_type: EventType,
    delivery_id: Optional[str] = None,
    recipient_id: Optional[str] = None,
    **payload: Any
) -> DomainEvent:
    """Stage an outbox event in the caller's transaction; the caller commits."""
    event = DomainEvent(
        type=event_type,
        delivery_id=delivery_id,
        recipient_id=recipient_id,
        payload=json.dumps(payload, default=_json_default),
        created_at=datetime.utcnow(),
    )
    db.add(event)
    return event


class EventDispatcher:
    """Forwards committed outbox events to realtime / push transports.

    Delivery to subscribers is best effort: a failing handler is logged and the
    event is still marked dispatched, because notifications are never allowed to
    affect delivery state.
    """

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}

    def subscribe(self, event_type: EventType, handler: EventHandler):
        self._handlers.setdefault(event_type, []).append(handler)

    def clear(self):
        self._handlers = {}

    def dispatch_pending(self, db: Session, limit: int = 100) -> int:
        """Hand undispatched events to their subscribers, oldest first."""
        events = db.query(DomainEvent).filter(
            DomainEvent.dispatched_at.is_(None)
        ).order_by(DomainEvent.created_at).limit(limit).all()

        for event in events:
            payload = json.loads(event.payload or "{}")
            event.attempts += 1
            for handler in self._handlers.get(event.type, []):
                try:
                    handler(event, payload)
                except Exception as e:
                    event.last_error = str(e)
                    logger.error(f"Event handler failed for {event.type.value} {event.id}: {str(e)}")
            event.dispatched_at = datetime.utcnow()

        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Error marking events dispatched: {str(e)}")
            return 0

        if events:
            logger.info(f"Dispatched {len(events)} domain events")
        return len(events)


dispatcher = EventDispatcher()
