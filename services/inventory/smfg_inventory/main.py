"""
Inventory Service — FastAPI entry point

Thin HTTP layer over the allocation engine. Startup wires the PostgreSQL
ledger, the outbox publisher the engine writes through, and the background
dispatcher that relays committed events to Redis.

┌────────┐   ┌──────────────────┐   ┌──────────┐   ┌────────────┐   ┌───────┐
│  HTTP  │──▶│ AllocationEngine │──▶│ Postgres │──▶│ dispatcher │──▶│ Redis │
└────────┘   └──────────────────┘   │ + outbox │   └────────────┘   └───────┘
                                    └──────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import db
from .config import load_settings
from .dispatcher import OutboxDispatcher
from .engine import AllocationEngine
from .errors import FulfillmentError, InventoryError, NotFoundError, ValidationError
from .logs import configure_logging
from .models import Product, ProductionEvent, Reservation
from .publisher import OutboxPublisher, RedisPublisher
from .repository import PostgresRepository

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 50


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_text)

    engine = create_async_engine(settings.database_url, echo=False)
    await db.wait_for_database(
        engine, settings.startup_retries, settings.startup_backoff_seconds
    )
    if settings.db_migrate:
        await db.apply_schema(engine)

    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    repo = PostgresRepository(async_session)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

    app.state.engine = AllocationEngine(repo, OutboxPublisher(repo))

    shutdown_event = asyncio.Event()
    dispatcher = OutboxDispatcher(
        repo,
        RedisPublisher(redis_pool),
        batch_size=settings.outbox_batch_size,
        poll_seconds=settings.outbox_poll_seconds,
    )
    dispatcher_task = asyncio.create_task(dispatcher.run(shutdown_event))
    yield
    shutdown_event.set()
    dispatcher_task.cancel()
    try:
        await dispatcher_task
    except asyncio.CancelledError:
        pass
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


def get_engine(request: Request) -> AllocationEngine:
    return request.app.state.engine


# ── Error rendering ──────────────────────────────


@app.exception_handler(ValidationError)
async def invalid_request(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=400,
        content={"status": "Invalid request.", "error": str(exc)},
    )


@app.exception_handler(NotFoundError)
async def not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"status": "Resource not found."})


@app.exception_handler(InventoryError)
async def internal_error(request: Request, exc: InventoryError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "status": "Internal server error.",
            "error": "An internal server error has occurred.",
        },
    )


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    """Quantities can't be set on creation; only production changes them."""

    sku: str = Field(min_length=1)
    upc: str = Field(min_length=1)
    name: str = Field(min_length=1)


class ProductionEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(default="", alias="requestID")
    quantity: int = 0


class ReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(default="", alias="requestID")
    requester: str = ""
    requested_quantity: int = Field(default=0, alias="requestedQuantity")


# ── Inventory Endpoints ──────────────────────────

router = APIRouter(prefix="/inventory/v1")


async def product_for_sku(
    sku: str, engine: AllocationEngine = Depends(get_engine)
) -> Product:
    return await engine.get_product(sku)


@router.get("", response_model=list[Product])
async def list_products(
    limit: int = DEFAULT_PAGE_LIMIT,
    offset: int = 0,
    engine: AllocationEngine = Depends(get_engine),
):
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset must not be negative")
    return await engine.get_all_products(limit, offset)


@router.post("", response_model=Product, status_code=201)
async def create_product(
    req: CreateProductRequest,
    engine: AllocationEngine = Depends(get_engine),
):
    return await engine.create_product(Product(sku=req.sku, upc=req.upc, name=req.name))


@router.post("/{sku}/productionEvent", response_model=ProductionEvent, status_code=201)
async def create_production_event(
    req: ProductionEventRequest,
    product: Product = Depends(product_for_sku),
    engine: AllocationEngine = Depends(get_engine),
):
    event = ProductionEvent(request_id=req.request_id, sku=product.sku, quantity=req.quantity)
    try:
        return await engine.produce(product, event)
    except FulfillmentError as exc:
        # production is committed; the next trigger sweeps again
        logger.error("Production %s recorded, fulfillment failed: %s", exc.result.request_id, exc)
        return exc.result


@router.post("/{sku}/reservation", response_model=Reservation, status_code=201)
async def create_reservation(
    req: ReservationRequest,
    product: Product = Depends(product_for_sku),
    engine: AllocationEngine = Depends(get_engine),
):
    reservation = Reservation(
        request_id=req.request_id,
        requester=req.requester,
        sku=product.sku,
        requested_quantity=req.requested_quantity,
    )
    try:
        return await engine.reserve(product, reservation)
    except FulfillmentError as exc:
        logger.error("Reservation %s recorded, fulfillment failed: %s", exc.result.request_id, exc)
        return exc.result


@router.delete("/{sku}/reservation/{reservation_id}", status_code=501)
async def cancel_reservation(sku: str, reservation_id: int):
    return JSONResponse(status_code=501, content={"status": "Not implemented."})


app.include_router(router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
