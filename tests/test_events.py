from __future__ import annotations

from sqlmodel import Session, SQLModel, create_engine, select

from churchhub.domain.models import EventEnvelope, EventRecord
from churchhub.infra.events import EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type="branch_access.granted",
        organization_id="org-a",
        payload={"user_id": "user-1", "branch_id": "branch-1"},
    )
    bus.subscribe("branch_access.granted", handler)

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].organization_id == "org-a"
    assert seen == [event.event_id]


def test_event_bus_wildcard_and_unsubscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_type)

    bus.subscribe("*", handler)
    with Session(engine) as session:
        bus.publish(EventEnvelope(event_type="role.created", organization_id="org-a", payload={}), session=session)
        bus.unsubscribe("*", handler)
        bus.publish(EventEnvelope(event_type="role.deleted", organization_id="org-a", payload={}), session=session)
        session.commit()

    assert seen == ["role.created"]
