"""
Inventory Service — allocation engine

Records production and reservation requests and hands available stock to
open reservations in the order they were submitted.

  produce ──┐                       ┌─▶ InventoryChanged
            ├─▶ commit ─▶ fill_reserves ─┤
  reserve ──┘   (one tx)   (one tx per   └─▶ ReservationFilled
                            reservation)

Both intakes are idempotent on request_id: a repeated request returns the
stored record and changes nothing. Every step that changes a product reads
it with a row lock first, so concurrent operations on one SKU serialize on
that row. Conflicts reported by the store as ConcurrencyError are retried.
"""

import logging
from datetime import datetime, timezone

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from .errors import ConcurrencyError, FulfillmentError, InventoryError, NotFoundError, ValidationError
from .events import DomainEvent, InventoryChanged, ReservationFilled
from .models import Product, ProductionEvent, Reservation, ReserveState
from .publisher import EventPublisher
from .repository import Found, Repository, Transaction, in_transaction

logger = logging.getLogger(__name__)

SWEEP_PAGE_SIZE = 50
MAX_ATTEMPTS = 3
# quantities are stored as BIGINT
MAX_QUANTITY = 2**63 - 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AllocationEngine:
    def __init__(
        self,
        repo: Repository,
        publisher: EventPublisher,
        page_size: int = SWEEP_PAGE_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
        retry_wait: wait_base | None = None,
    ):
        self.repo = repo
        self.publisher = publisher
        self.page_size = page_size
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.05, max=1)

    # ── Products ─────────────────────────────────

    async def create_product(self, product: Product) -> Product:
        await self.repo.save_product(product)
        return product

    async def get_product(self, sku: str) -> Product:
        found = await self.repo.get_product(sku)
        if not isinstance(found, Found):
            raise NotFoundError(f"product {sku} not found")
        return found.value

    async def get_all_products(self, limit: int, offset: int) -> list[Product]:
        return await self.repo.get_all_products(limit, offset)

    # ── Production ───────────────────────────────

    async def produce(self, product: Product, event: ProductionEvent) -> ProductionEvent:
        """
        Record a production event and add its quantity to the product.

        1. Reject a missing request_id or a quantity below one
        2. Replay the stored event if request_id was seen before
        3. Lock the product, save the event, raise available and record
           InventoryChanged (one tx)
        4. Run the fulfillment sweep; a failure there leaves step 3 committed
        """
        if not event.request_id:
            raise ValidationError("requestID is required")
        if event.quantity < 1:
            raise ValidationError("quantity must be at least 1")
        if event.quantity > MAX_QUANTITY:
            raise ValidationError(f"quantity must not exceed {MAX_QUANTITY}")

        stored, updated = await self._retry(self._record_production, product.sku, event)
        if updated is None:
            return stored

        try:
            await self.fill_reserves(updated)
        except InventoryError as exc:
            logger.error(
                "Fulfillment after production %s of %s failed: %s",
                stored.request_id,
                stored.sku,
                exc,
            )
            raise FulfillmentError(stored, exc) from exc
        return stored

    async def _record_production(
        self, sku: str, event: ProductionEvent
    ) -> tuple[ProductionEvent, Product | None]:
        existing = await self.repo.get_production_event_by_request_id(event.request_id)
        if isinstance(existing, Found):
            logger.debug("Replaying production event %s", event.request_id)
            return existing.value, None

        async with in_transaction(self.repo, "produce") as tx:
            # lock before the insert; its foreign key check share-locks the row
            product = await self._lock_product(sku, tx)
            if product.available + event.quantity > MAX_QUANTITY:
                raise ValidationError(f"available of {sku} would exceed {MAX_QUANTITY}")
            stored = await self.repo.save_production_event(
                event.model_copy(update={"id": None, "sku": sku, "created": _now()}),
                tx=tx,
            )
            product.available += stored.quantity
            await self.repo.save_product(product, tx=tx)
            await self._publish(InventoryChanged(product=product), tx)

        logger.debug(
            "Produced %d of %s (request %s), available now %d",
            stored.quantity,
            sku,
            stored.request_id,
            product.available,
        )
        return stored, product

    # ── Reservation ──────────────────────────────

    async def reserve(self, product: Product, reservation: Reservation) -> Reservation:
        """
        Record a reservation request and try to fill it straight away.

        A repeated request_id returns the stored reservation unchanged.
        The returned reservation reflects whatever the sweep allocated.
        """
        if not reservation.request_id:
            raise ValidationError("requestID is required")
        if reservation.requested_quantity < 1:
            raise ValidationError("requestedQuantity must be at least 1")
        if reservation.requested_quantity > MAX_QUANTITY:
            raise ValidationError(f"requestedQuantity must not exceed {MAX_QUANTITY}")

        stored, created = await self._retry(self._record_reservation, product.sku, reservation)
        if not created:
            return stored

        try:
            await self.fill_reserves(await self.get_product(product.sku))
        except InventoryError as exc:
            logger.error(
                "Fulfillment after reservation %s of %s failed: %s",
                stored.request_id,
                stored.sku,
                exc,
            )
            raise FulfillmentError(stored, exc) from exc

        current = await self.repo.get_reservation_by_request_id(stored.request_id)
        return current.value if isinstance(current, Found) else stored

    async def _record_reservation(
        self, sku: str, reservation: Reservation
    ) -> tuple[Reservation, bool]:
        existing = await self.repo.get_reservation_by_request_id(reservation.request_id)
        if isinstance(existing, Found):
            logger.debug("Replaying reservation %s", reservation.request_id)
            return existing.value, False

        async with in_transaction(self.repo, "reserve") as tx:
            stored = await self.repo.save_reservation(
                reservation.model_copy(
                    update={
                        "id": None,
                        "sku": sku,
                        "state": ReserveState.OPEN,
                        "reserved_quantity": 0,
                        "created": _now(),
                    }
                ),
                tx=tx,
            )
        logger.debug(
            "Reserved %d of %s for %s (request %s)",
            stored.requested_quantity,
            sku,
            stored.requester,
            stored.request_id,
        )
        return stored, True

    # ── Fulfillment sweep ────────────────────────

    async def fill_reserves(self, product: Product) -> Product:
        """
        Allocate available stock to open reservations, oldest first.

        Each reservation is handled in its own transaction, so a failure
        stops the sweep but keeps everything allocated before it. Pages of
        open reservations are read until one is empty, available runs out,
        or a page allocates nothing.
        """
        sku = product.sku
        while product.available > 0:
            page = await self.repo.get_sku_reservations_by_state(
                sku, ReserveState.OPEN, self.page_size, 0
            )
            if not page:
                break

            progressed = False
            for reservation in page:
                product, changed = await self._retry(
                    self._fill_reservation, sku, reservation.request_id
                )
                progressed = progressed or changed
                if product.available == 0:
                    break
            if not progressed:
                break
        return product

    async def _fill_reservation(self, sku: str, request_id: str) -> tuple[Product, bool]:
        async with in_transaction(self.repo, "fill reservation") as tx:
            product = await self._lock_product(sku, tx)
            found = await self.repo.get_reservation_by_request_id(request_id, tx=tx)
            # closed meanwhile by a concurrent sweep
            if not isinstance(found, Found) or found.value.is_closed:
                return product, False
            if product.available == 0:
                return product, False

            reservation = found.value
            qty = min(reservation.remaining, product.available)
            product.available -= qty
            product.reserved += qty
            reservation.reserved_quantity += qty

            closed = reservation.reserved_quantity == reservation.requested_quantity
            if closed:
                # closing hands the quantity off, as if shipped
                reservation.state = ReserveState.CLOSED
                product.reserved -= reservation.requested_quantity

            await self.repo.save_product(product, tx=tx)
            await self.repo.update_reservation(
                reservation.id, reservation.state, reservation.reserved_quantity, tx=tx
            )
            if closed:
                await self._publish(ReservationFilled(reservation=reservation), tx)
            await self._publish(InventoryChanged(product=product), tx)

        logger.debug(
            "Allocated %d of %s to %s (%d/%d, %s)",
            qty,
            sku,
            request_id,
            reservation.reserved_quantity,
            reservation.requested_quantity,
            reservation.state.value,
        )
        return product, True

    # ── Helpers ──────────────────────────────────

    async def _lock_product(self, sku: str, tx: Transaction) -> Product:
        found = await self.repo.get_product(sku, tx=tx, for_update=True)
        if not isinstance(found, Found):
            raise NotFoundError(f"product {sku} not found")
        return found.value

    async def _publish(self, event: DomainEvent, tx: Transaction) -> None:
        await self.publisher.publish(event.topic, event.envelope(), tx=tx)

    async def _retry(self, fn, *args):
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyError),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await fn(*args)
