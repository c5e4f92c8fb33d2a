"""
Inventory Service — ledger store

Durable storage for products, production events, reservations and the
outbox. The store holds no business rules; the allocation engine is its
only writer.

Every method takes an optional ``tx``. Without one the call runs (and for
writes, commits) in a session of its own.

Lookups return ``Found(value)`` or ``NOT_FOUND`` instead of raising, so
"no earlier request with this id" is never confused with a storage failure.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Generic, Protocol, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import outbox
from .errors import ConcurrencyError, StorageError
from .events import OutboxEvent
from .models import Product, ProductionEvent, Reservation, ReserveState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, unique_violation
RETRYABLE_SQLSTATES = {"40001", "40P01", "23505"}


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


class NotFound:
    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = NotFound()


class Transaction(Protocol):
    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class Repository(Protocol):
    async def save_production_event(
        self, event: ProductionEvent, tx: Transaction | None = None
    ) -> ProductionEvent: ...

    async def get_production_event_by_request_id(
        self, request_id: str, tx: Transaction | None = None
    ) -> Found[ProductionEvent] | NotFound: ...

    async def save_product(self, product: Product, tx: Transaction | None = None) -> None: ...

    async def get_product(
        self, sku: str, tx: Transaction | None = None, for_update: bool = False
    ) -> Found[Product] | NotFound: ...

    async def get_all_products(
        self, limit: int, offset: int, tx: Transaction | None = None
    ) -> list[Product]: ...

    async def save_reservation(
        self, reservation: Reservation, tx: Transaction | None = None
    ) -> Reservation: ...

    async def get_reservation_by_request_id(
        self, request_id: str, tx: Transaction | None = None
    ) -> Found[Reservation] | NotFound: ...

    async def update_reservation(
        self,
        reservation_id: int,
        state: ReserveState,
        reserved_quantity: int,
        tx: Transaction | None = None,
    ) -> None: ...

    async def get_sku_reservations_by_state(
        self,
        sku: str,
        state: ReserveState,
        limit: int,
        offset: int,
        tx: Transaction | None = None,
    ) -> list[Reservation]: ...

    async def add_outbox_event(
        self, topic: str, payload: dict, tx: Transaction | None = None
    ) -> OutboxEvent: ...

    async def get_pending_outbox_events(
        self, limit: int, tx: Transaction | None = None
    ) -> list[OutboxEvent]: ...

    async def mark_outbox_published(self, outbox_id: int, tx: Transaction | None = None) -> None: ...

    async def mark_outbox_failed(
        self,
        outbox_id: int,
        error: str,
        retry_at: datetime | None,
        tx: Transaction | None = None,
    ) -> None: ...

    async def begin_transaction(self) -> Transaction: ...


@asynccontextmanager
async def in_transaction(repo: Repository, step: str) -> AsyncIterator[Transaction]:
    """Commit when the block finishes, roll back when it raises.

    A failed rollback is logged and the original error is re-raised.
    """
    tx = await repo.begin_transaction()
    try:
        yield tx
        await tx.commit()
    except BaseException:
        try:
            await tx.rollback()
        except Exception:
            logger.warning("Failed to roll back %s", step, exc_info=True)
        raise


def translate_error(step: str, exc: SQLAlchemyError) -> StorageError:
    orig = getattr(exc, "orig", None)
    code = (
        getattr(orig, "pgcode", None)
        or getattr(orig, "sqlstate", None)
        or getattr(getattr(orig, "__cause__", None), "sqlstate", None)
    )
    if isinstance(exc, DBAPIError) and code in RETRYABLE_SQLSTATES:
        return ConcurrencyError(step, exc)
    return StorageError(step, exc)


class SessionTransaction:
    """A Transaction backed by one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            raise translate_error("commit", exc) from exc
        finally:
            await self.session.close()

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        finally:
            await self.session.close()


def _row_to_product(row) -> Product:
    return Product(
        sku=row.sku,
        upc=row.upc,
        name=row.name,
        available=row.available,
        reserved=row.reserved,
    )


def _row_to_reservation(row) -> Reservation:
    return Reservation(
        id=row.id,
        request_id=row.request_id,
        requester=row.requester,
        sku=row.sku,
        state=ReserveState(row.state),
        reserved_quantity=row.reserved_quantity,
        requested_quantity=row.requested_quantity,
        created=row.created,
    )


_RESERVATION_COLUMNS = """
    id, request_id, requester, sku, state,
    reserved_quantity, requested_quantity, created
"""


class PostgresRepository:
    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    @asynccontextmanager
    async def _session(self, step: str, tx: Transaction | None) -> AsyncIterator[AsyncSession]:
        try:
            if tx is not None:
                yield tx.session
            else:
                async with self._sessions() as session:
                    yield session
                    await session.commit()
        except SQLAlchemyError as exc:
            raise translate_error(step, exc) from exc

    async def begin_transaction(self) -> SessionTransaction:
        return SessionTransaction(self._sessions())

    # ── Products ─────────────────────────────────

    async def save_product(self, product: Product, tx: Transaction | None = None) -> None:
        async with self._session("save_product", tx) as session:
            await session.execute(
                text("""
                    INSERT INTO products (sku, upc, name, available, reserved)
                    VALUES (:sku, :upc, :name, :available, :reserved)
                    ON CONFLICT (sku) DO UPDATE SET
                        upc = EXCLUDED.upc,
                        name = EXCLUDED.name,
                        available = EXCLUDED.available,
                        reserved = EXCLUDED.reserved
                """),
                product.model_dump(),
            )

    async def get_product(
        self, sku: str, tx: Transaction | None = None, for_update: bool = False
    ) -> Found[Product] | NotFound:
        lock = "FOR UPDATE" if for_update else ""
        async with self._session("get_product", tx) as session:
            result = await session.execute(
                text(f"""
                    SELECT sku, upc, name, available, reserved
                    FROM products WHERE sku = :sku {lock}
                """),
                {"sku": sku},
            )
            row = result.fetchone()
        if not row:
            return NOT_FOUND
        return Found(_row_to_product(row))

    async def get_all_products(
        self, limit: int, offset: int, tx: Transaction | None = None
    ) -> list[Product]:
        async with self._session("get_all_products", tx) as session:
            result = await session.execute(
                text("""
                    SELECT sku, upc, name, available, reserved
                    FROM products ORDER BY sku LIMIT :limit OFFSET :offset
                """),
                {"limit": limit, "offset": offset},
            )
            return [_row_to_product(row) for row in result.fetchall()]

    # ── Production events ────────────────────────

    async def save_production_event(
        self, event: ProductionEvent, tx: Transaction | None = None
    ) -> ProductionEvent:
        async with self._session("save_production_event", tx) as session:
            result = await session.execute(
                text("""
                    INSERT INTO production_events (request_id, sku, quantity, created)
                    VALUES (:request_id, :sku, :quantity, :created)
                    RETURNING id
                """),
                {
                    "request_id": event.request_id,
                    "sku": event.sku,
                    "quantity": event.quantity,
                    "created": event.created,
                },
            )
            new_id = result.scalar_one()
        return event.model_copy(update={"id": new_id})

    async def get_production_event_by_request_id(
        self, request_id: str, tx: Transaction | None = None
    ) -> Found[ProductionEvent] | NotFound:
        async with self._session("get_production_event_by_request_id", tx) as session:
            result = await session.execute(
                text("""
                    SELECT id, request_id, sku, quantity, created
                    FROM production_events WHERE request_id = :request_id
                """),
                {"request_id": request_id},
            )
            row = result.fetchone()
        if not row:
            return NOT_FOUND
        return Found(
            ProductionEvent(
                id=row.id,
                request_id=row.request_id,
                sku=row.sku,
                quantity=row.quantity,
                created=row.created,
            )
        )

    # ── Reservations ─────────────────────────────

    async def save_reservation(
        self, reservation: Reservation, tx: Transaction | None = None
    ) -> Reservation:
        async with self._session("save_reservation", tx) as session:
            result = await session.execute(
                text("""
                    INSERT INTO reservations
                        (request_id, requester, sku, state,
                         reserved_quantity, requested_quantity, created)
                    VALUES
                        (:request_id, :requester, :sku, :state,
                         :reserved_quantity, :requested_quantity, :created)
                    RETURNING id
                """),
                {
                    "request_id": reservation.request_id,
                    "requester": reservation.requester,
                    "sku": reservation.sku,
                    "state": reservation.state.value,
                    "reserved_quantity": reservation.reserved_quantity,
                    "requested_quantity": reservation.requested_quantity,
                    "created": reservation.created,
                },
            )
            new_id = result.scalar_one()
        return reservation.model_copy(update={"id": new_id})

    async def get_reservation_by_request_id(
        self, request_id: str, tx: Transaction | None = None
    ) -> Found[Reservation] | NotFound:
        async with self._session("get_reservation_by_request_id", tx) as session:
            result = await session.execute(
                text(f"""
                    SELECT {_RESERVATION_COLUMNS}
                    FROM reservations WHERE request_id = :request_id
                """),
                {"request_id": request_id},
            )
            row = result.fetchone()
        if not row:
            return NOT_FOUND
        return Found(_row_to_reservation(row))

    async def update_reservation(
        self,
        reservation_id: int,
        state: ReserveState,
        reserved_quantity: int,
        tx: Transaction | None = None,
    ) -> None:
        async with self._session("update_reservation", tx) as session:
            await session.execute(
                text("""
                    UPDATE reservations
                    SET state = :state, reserved_quantity = :reserved_quantity
                    WHERE id = :id
                """),
                {
                    "id": reservation_id,
                    "state": state.value,
                    "reserved_quantity": reserved_quantity,
                },
            )

    async def get_sku_reservations_by_state(
        self,
        sku: str,
        state: ReserveState,
        limit: int,
        offset: int,
        tx: Transaction | None = None,
    ) -> list[Reservation]:
        async with self._session("get_sku_reservations_by_state", tx) as session:
            result = await session.execute(
                text(f"""
                    SELECT {_RESERVATION_COLUMNS}
                    FROM reservations
                    WHERE sku = :sku AND state = :state
                    ORDER BY created ASC, id ASC
                    LIMIT :limit OFFSET :offset
                """),
                {"sku": sku, "state": state.value, "limit": limit, "offset": offset},
            )
            return [_row_to_reservation(row) for row in result.fetchall()]

    # ── Outbox ───────────────────────────────────

    async def add_outbox_event(
        self, topic: str, payload: dict, tx: Transaction | None = None
    ) -> OutboxEvent:
        async with self._session("add_outbox_event", tx) as session:
            return await outbox.append_event(session, topic, payload)

    async def get_pending_outbox_events(
        self, limit: int, tx: Transaction | None = None
    ) -> list[OutboxEvent]:
        async with self._session("get_pending_outbox_events", tx) as session:
            return await outbox.load_pending(session, limit)

    async def mark_outbox_published(self, outbox_id: int, tx: Transaction | None = None) -> None:
        async with self._session("mark_outbox_published", tx) as session:
            await outbox.mark_published(session, outbox_id)

    async def mark_outbox_failed(
        self,
        outbox_id: int,
        error: str,
        retry_at: datetime | None,
        tx: Transaction | None = None,
    ) -> None:
        async with self._session("mark_outbox_failed", tx) as session:
            await outbox.mark_failed(session, outbox_id, error, retry_at)
