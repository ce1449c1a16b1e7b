from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from backoffice.domain.models import EventEnvelope, EventRecord
from backoffice.infra.db import get_engine

EventHandler = Callable[[EventEnvelope], None]

RATE_CARD_CREATED = "rate_card.created"
RATE_CARD_VERSIONED = "rate_card.versioned"
RATE_CARD_SUPERSEDED = "rate_card.superseded"
RATE_CARD_ADJUSTMENT_CREATED = "rate_card.adjustment_created"
RATE_CARD_DEACTIVATED = "rate_card.deactivated"
RATE_CARD_REACTIVATED = "rate_card.reactivated"
RATE_CARD_ARCHIVED = "rate_card.archived"
RATE_CARD_RESTORED = "rate_card.restored"
RATE_CARD_CONTRACT_LINKED = "rate_card.contract_linked"
RATE_CARD_CONTRACT_UNLINKED = "rate_card.contract_unlinked"
INVOICE_GENERATED = "invoice.generated"
INVOICE_STATUS_CHANGED = "invoice.status_changed"
INVOICE_PAYMENT_APPLIED = "invoice.payment_applied"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        # A caller-owned session keeps the record inside its transaction.
        should_commit = session is None
        if session is None:
            session = Session(get_engine())
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                customer_id=event.customer_id,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
            session.add(record)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        customer_id: str | None,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
        session: Session | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            customer_id=customer_id,
            actor_id=actor_id,
            payload=payload,
        )
        self.publish(event, session=session)
        return event


event_bus = EventBus()
