"""In-memory stand-ins for the ledger store and the broker."""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from smfg_inventory.errors import PublishError
from smfg_inventory.events import OutboxEvent
from smfg_inventory.models import Product, ProductionEvent, Reservation, ReserveState
from smfg_inventory.repository import NOT_FOUND, Found


@dataclass
class LedgerState:
    products: dict = field(default_factory=dict)
    production_events: dict = field(default_factory=dict)
    reservations: dict = field(default_factory=dict)
    outbox: dict = field(default_factory=dict)
    next_id: int = 1

    def new_id(self) -> int:
        self.next_id += 1
        return self.next_id - 1


class FakeTransaction:
    """Works on a private copy of the ledger, swapped in on commit."""

    def __init__(self, repo: "InMemoryRepository"):
        self.repo = repo
        self.state = copy.deepcopy(repo.state)
        self.committed = False
        self.rolled_back = False

    async def commit(self) -> None:
        self.repo.check("commit")
        self.repo.state = self.state
        self.committed = True

    async def rollback(self) -> None:
        self.rolled_back = True


class InMemoryRepository:
    def __init__(self):
        self.state = LedgerState()
        self.transactions: list[FakeTransaction] = []
        self.calls: list[str] = []
        self._failures: dict[str, list] = {}

    # ── test controls ──

    def fail(self, method: str, exc: Exception, after: int = 0, times: int = 1) -> None:
        """Raise exc from `method` after `after` successful calls, `times` times."""
        self._failures[method] = [after, times, exc]

    def check(self, method: str) -> None:
        self.calls.append(method)
        failure = self._failures.get(method)
        if not failure:
            return
        if failure[0] > 0:
            failure[0] -= 1
            return
        failure[1] -= 1
        if failure[1] <= 0:
            del self._failures[method]
        raise failure[2]

    def _data(self, tx) -> LedgerState:
        return tx.state if tx is not None else self.state

    async def begin_transaction(self) -> FakeTransaction:
        self.check("begin_transaction")
        tx = FakeTransaction(self)
        self.transactions.append(tx)
        return tx

    # ── products ──

    async def save_product(self, product: Product, tx=None) -> None:
        self.check("save_product")
        self._data(tx).products[product.sku] = product.model_copy(deep=True)

    async def get_product(self, sku: str, tx=None, for_update: bool = False):
        self.check("get_product")
        product = self._data(tx).products.get(sku)
        if product is None:
            return NOT_FOUND
        return Found(product.model_copy(deep=True))

    async def get_all_products(self, limit: int, offset: int, tx=None) -> list[Product]:
        self.check("get_all_products")
        products = sorted(self._data(tx).products.values(), key=lambda p: p.sku)
        return [p.model_copy(deep=True) for p in products[offset : offset + limit]]

    # ── production events ──

    async def save_production_event(self, event: ProductionEvent, tx=None) -> ProductionEvent:
        self.check("save_production_event")
        data = self._data(tx)
        stored = event.model_copy(update={"id": data.new_id()}, deep=True)
        data.production_events[stored.request_id] = stored
        return stored.model_copy(deep=True)

    async def get_production_event_by_request_id(self, request_id: str, tx=None):
        self.check("get_production_event_by_request_id")
        event = self._data(tx).production_events.get(request_id)
        if event is None:
            return NOT_FOUND
        return Found(event.model_copy(deep=True))

    # ── reservations ──

    async def save_reservation(self, reservation: Reservation, tx=None) -> Reservation:
        self.check("save_reservation")
        data = self._data(tx)
        stored = reservation.model_copy(update={"id": data.new_id()}, deep=True)
        data.reservations[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_reservation_by_request_id(self, request_id: str, tx=None):
        self.check("get_reservation_by_request_id")
        for reservation in self._data(tx).reservations.values():
            if reservation.request_id == request_id:
                return Found(reservation.model_copy(deep=True))
        return NOT_FOUND

    async def update_reservation(
        self, reservation_id: int, state: ReserveState, reserved_quantity: int, tx=None
    ) -> None:
        self.check("update_reservation")
        reservation = self._data(tx).reservations[reservation_id]
        reservation.state = state
        reservation.reserved_quantity = reserved_quantity

    async def get_sku_reservations_by_state(
        self, sku: str, state: ReserveState, limit: int, offset: int, tx=None
    ) -> list[Reservation]:
        self.check("get_sku_reservations_by_state")
        matching = sorted(
            (
                r
                for r in self._data(tx).reservations.values()
                if r.sku == sku and r.state is state
            ),
            key=lambda r: (r.created, r.id),
        )
        return [r.model_copy(deep=True) for r in matching[offset : offset + limit]]

    # ── outbox ──

    async def add_outbox_event(self, topic: str, payload: dict, tx=None) -> OutboxEvent:
        self.check("add_outbox_event")
        data = self._data(tx)
        event = OutboxEvent(
            id=data.new_id(),
            event_id=UUID(payload["event_id"]),
            event_type=payload["event_type"],
            topic=topic,
            payload=payload,
            occurred_at=datetime.fromisoformat(payload["occurred_at"]),
            available_at=datetime.now(timezone.utc),
        )
        data.outbox[event.id] = event
        return event.model_copy(deep=True)

    async def get_pending_outbox_events(self, limit: int, tx=None) -> list[OutboxEvent]:
        self.check("get_pending_outbox_events")
        now = datetime.now(timezone.utc)
        due = [
            e
            for e in sorted(self._data(tx).outbox.values(), key=lambda e: e.id)
            if e.published_at is None and e.available_at is not None and e.available_at <= now
        ]
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def mark_outbox_published(self, outbox_id: int, tx=None) -> None:
        self.check("mark_outbox_published")
        event = self._data(tx).outbox[outbox_id]
        event.published_at = datetime.now(timezone.utc)
        event.publish_attempts += 1
        event.last_error = None

    async def mark_outbox_failed(self, outbox_id: int, error: str, retry_at, tx=None) -> None:
        self.check("mark_outbox_failed")
        event = self._data(tx).outbox[outbox_id]
        event.publish_attempts += 1
        event.last_error = error
        event.available_at = retry_at

    # ── inspection helpers ──

    def product(self, sku: str) -> Product:
        return self.state.products[sku]

    def reservation(self, request_id: str) -> Reservation:
        return next(r for r in self.state.reservations.values() if r.request_id == request_id)

    def outbox_events(self, event_type: str | None = None) -> list[OutboxEvent]:
        events = sorted(self.state.outbox.values(), key=lambda e: e.id)
        return [e for e in events if event_type is None or e.event_type == event_type]


class RecordingPublisher:
    """Collects (topic, payload) pairs; can be told to fail."""

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.failures = 0

    async def publish(self, topic: str, payload: dict, tx=None) -> None:
        if self.failures:
            self.failures -= 1
            raise PublishError(topic, ConnectionError("broker unavailable"))
        self.sent.append((topic, payload))


# ── builders ──


def production(request_id="p1", quantity=10, **overrides):
    return ProductionEvent(request_id=request_id, quantity=quantity, **overrides)


def reservation(request_id="r1", requested=10, requester="ACME", **overrides):
    return Reservation(
        request_id=request_id,
        requester=requester,
        requested_quantity=requested,
        **overrides,
    )
