"""
Inventory Service — database bootstrap

Connection retries happen here, at startup only. Individual operations are
not retried on connection errors.
"""

import logging
from importlib import resources

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)


async def wait_for_database(engine: AsyncEngine, retries: int, backoff_seconds: float) -> None:
    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type((OperationalError, OSError)),
        stop=stop_after_attempt(retries),
        wait=wait_fixed(backoff_seconds),
        before_sleep=before_sleep_log(logger, logging.ERROR),
        reraise=True,
    ):
        with attempt:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
    logger.info("Database is reachable")


def schema_statements() -> list[str]:
    sql = resources.files(__package__).joinpath("schema.sql").read_text()
    return [stmt.strip() for stmt in sql.split(";") if stmt.strip()]


async def apply_schema(engine: AsyncEngine) -> None:
    logger.info("Applying schema")
    async with engine.begin() as conn:
        for stmt in schema_statements():
            await conn.execute(text(stmt))
