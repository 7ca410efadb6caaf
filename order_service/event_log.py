"""
Append-only order event ledger.

Events are only ever inserted. Views sort the same rows by (timestamp, id):
ascending for the internal audit trail, descending for the customer timeline.
"""
from datetime import datetime
from typing import List, Optional, Tuple
import logging

import pydantic
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models, schemas
from .errors import NotFound, ValidationError
from .state_machine import ActorType, OrderStatus

logger = logging.getLogger(__name__)


def coerce_event_data(data) -> schemas.EventData:
    """Accepts a payload model or a raw dict carrying a ``type`` key."""
    try:
        return schemas.event_data_adapter.validate_python(data)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid event payload",
            code="INVALID_EVENT_DATA",
            details={"errors": e.errors(include_url=False)},
        ) from e


def serialize_event_data(data: schemas.EventData) -> dict:
    return data.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"type"})


def parse_event_data(event: models.OrderEvent) -> schemas.EventData:
    return coerce_event_data({**event.data_json, "type": event.event_type})


async def append(
    db: AsyncSession,
    order_id: str,
    data,
    actor_type: ActorType,
    actor_id: str,
    timestamp: Optional[datetime] = None,
) -> models.OrderEvent:
    """Appends one validated event for an existing order."""
    payload = coerce_event_data(data)
    if await db.get(models.Order, order_id) is None:
        raise NotFound(f"Order {order_id} not found", code="ORDER_NOT_FOUND")

    event = models.OrderEvent(
        order_id=order_id,
        timestamp=timestamp or models.utcnow(),
        event_type=payload.type,
        data_json=serialize_event_data(payload),
        actor_type=ActorType(actor_type).value,
        actor_id=actor_id,
    )
    db.add(event)
    await db.flush()
    logger.debug(f"Appended {event.event_type} #{event.id} to order {order_id} by {event.actor_type}:{actor_id}")
    return event


async def list_events(db: AsyncSession, order_id: str, descending: bool = False) -> List[models.OrderEvent]:
    stmt = select(models.OrderEvent).where(models.OrderEvent.order_id == order_id)
    if descending:
        stmt = stmt.order_by(models.OrderEvent.timestamp.desc(), models.OrderEvent.id.desc())
    else:
        stmt = stmt.order_by(models.OrderEvent.timestamp.asc(), models.OrderEvent.id.asc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


def status_history(events: List[models.OrderEvent]) -> List[Tuple[OrderStatus, ActorType]]:
    """(new_status, actor) pairs of the STATUS_UPDATE events, in the given order."""
    history = []
    for event in events:
        if event.event_type == schemas.EventType.STATUS_UPDATE.value:
            history.append((OrderStatus(event.data_json["newStatus"]), ActorType(event.actor_type)))
    return history


def to_event_out(event: models.OrderEvent, include_actor_id: bool = True) -> schemas.OrderEventOut:
    return schemas.OrderEventOut(
        id=event.id,
        timestamp=event.timestamp,
        event_type=event.event_type,
        data=event.data_json,
        actor_type=event.actor_type,
        actor_id=event.actor_id if include_actor_id else None,
    )
