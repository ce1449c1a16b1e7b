from __future__ import annotations

from sqlmodel import Session, SQLModel, create_engine, select

from backoffice.domain.models import EventEnvelope, EventRecord
from backoffice.infra.events import RATE_CARD_CREATED, EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type=RATE_CARD_CREATED,
        customer_id="customer-a",
        payload={"rate_card_id": "card-1"},
    )
    bus.subscribe(RATE_CARD_CREATED, handler)

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].customer_id == "customer-a"
    assert seen == [event.event_id]


def test_event_rolls_back_with_caller_transaction() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    bus = EventBus()
    wildcard: list[str] = []
    bus.subscribe("*", lambda event: wildcard.append(event.event_type))

    with Session(engine) as session:
        bus.publish_dict("invoice.generated", "customer-a", {"invoice_id": "inv-1"}, session=session)
        session.rollback()

    with Session(engine) as session:
        assert session.exec(select(EventRecord)).all() == []
    assert wildcard == ["invoice.generated"]


def test_unsubscribed_handler_is_not_called() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    bus.subscribe(RATE_CARD_CREATED, handler)
    bus.unsubscribe(RATE_CARD_CREATED, handler)
    with Session(engine) as session:
        bus.publish_dict(RATE_CARD_CREATED, None, {}, session=session)
        session.commit()

    assert seen == []
