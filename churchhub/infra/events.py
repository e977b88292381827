from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from churchhub.domain.models import EventEnvelope, EventRecord
from churchhub.infra.context import get_user_id
from churchhub.infra.db import engine

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]
ANY_EVENT = "*"


class EventBus:
    """In-process bus: every event is stored as an ``EventRecord`` before
    subscribers for its type (and for ``*``) are called in subscription order."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def _handlers_for(self, event_type: str) -> list[EventHandler]:
        return [*self._subscribers.get(event_type, []), *self._subscribers.get(ANY_EVENT, [])]

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        record = EventRecord(**event.model_dump())
        if session is not None:
            # Caller owns the transaction.
            session.add(record)
        else:
            with Session(engine) as own_session:
                own_session.add(record)
                own_session.commit()

        logger.debug("published %s for organization %s", event.event_type, event.organization_id)
        for handler in self._handlers_for(event.event_type):
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        organization_id: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
        correlation_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            organization_id=organization_id,
            actor_id=actor_id or get_user_id(),
            correlation_id=correlation_id,
            payload=payload,
        )
        self.publish(event)
        return event


event_bus = EventBus()
