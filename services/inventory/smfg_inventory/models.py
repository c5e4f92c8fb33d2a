"""
Inventory Service — data contracts

Products, production events and reservations as they move between the
ledger store, the allocation engine and the HTTP boundary.

Invariant across all three:
  sum(ProductionEvent.quantity) = available + reserved + quantity handed off by closed reservations
"""

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ReserveState(str, enum.Enum):
    OPEN = "Open"
    CLOSED = "Closed"


class Product(BaseModel):
    """A SKU able to be produced by the factory."""

    model_config = ConfigDict(populate_by_name=True)

    sku: str
    upc: str = ""
    name: str = ""
    available: int = 0
    reserved: int = 0


class ProductionEvent(BaseModel):
    """An addition to inventory through production of a Product.

    Append-only: written once per request_id and never changed afterwards.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = None
    request_id: str = Field(default="", alias="requestID")
    sku: str = ""
    quantity: int = 0
    created: datetime | None = None


class Reservation(BaseModel):
    """An amount of a single SKU set aside for a requester.

    reserved_quantity only grows, and the reservation closes exactly when it
    reaches requested_quantity.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = None
    request_id: str = Field(default="", alias="requestID")
    requester: str = ""
    sku: str = ""
    state: ReserveState = ReserveState.OPEN
    reserved_quantity: int = Field(default=0, alias="reservedQuantity")
    requested_quantity: int = Field(default=0, alias="requestedQuantity")
    created: datetime | None = None

    @property
    def remaining(self) -> int:
        return self.requested_quantity - self.reserved_quantity

    @property
    def is_closed(self) -> bool:
        return self.state is ReserveState.CLOSED
