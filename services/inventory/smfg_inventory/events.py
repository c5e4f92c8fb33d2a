"""
Inventory Service — event definitions

Events raised by the allocation engine. Each one is delivered on its own
topic as a JSON envelope:

    {"event_id": ..., "event_type": ..., "occurred_at": ..., "data": {...}}

Consumers deduplicate on event_id; delivery is at least once.
"""

from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .models import Product, Reservation

INVENTORY_TOPIC = "inventory.changed"
RESERVATION_TOPIC = "reservation.filled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    topic: ClassVar[str]

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime = Field(default_factory=_now)

    def data(self) -> dict:
        raise NotImplementedError

    def envelope(self) -> dict:
        return {
            "event_id": str(self.event_id),
            "event_type": type(self).__name__,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data(),
        }


class InventoryChanged(DomainEvent):
    """Available or reserved quantity of a product changed."""

    topic: ClassVar[str] = INVENTORY_TOPIC

    product: Product

    def data(self) -> dict:
        return self.product.model_dump(mode="json", by_alias=True)


class ReservationFilled(DomainEvent):
    """A reservation received its full requested quantity and was closed."""

    topic: ClassVar[str] = RESERVATION_TOPIC

    reservation: Reservation

    def data(self) -> dict:
        return self.reservation.model_dump(mode="json", by_alias=True)


class OutboxEvent(BaseModel):
    """An envelope waiting in the outbox for delivery after commit."""

    id: int | None = None
    event_id: UUID
    event_type: str
    topic: str
    payload: dict
    occurred_at: datetime
    available_at: datetime | None = None
    published_at: datetime | None = None
    publish_attempts: int = 0
    last_error: str | None = None
