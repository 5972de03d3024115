"""Billing database access: site lookup and batched usage increments."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog
from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, insert, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

LOGGER = structlog.get_logger("imgpro.usage.billing")

HOUR_SECONDS = 3600


metadata = MetaData()


sites_table = Table(
    "sites",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("domain", String(length=255), nullable=False, unique=True),
    Column("cache_hits", BigInteger, nullable=False, default=0),
    Column("cache_misses", BigInteger, nullable=False, default=0),
    Column("updated_at", Integer, nullable=True),
)


usage_hourly_table = Table(
    "usage_hourly",
    metadata,
    Column("site_id", BigInteger, primary_key=True, autoincrement=False),
    Column("hour_start", Integer, primary_key=True, autoincrement=False),
    Column("requests", BigInteger, nullable=False, default=0),
    Column("cache_hits", BigInteger, nullable=False, default=0),
    Column("cache_misses", BigInteger, nullable=False, default=0),
    Column("created_at", Integer, nullable=False),
    Column("updated_at", Integer, nullable=False),
)


def hour_bucket(timestamp: int) -> int:
    return (int(timestamp) // HOUR_SECONDS) * HOUR_SECONDS


class BillingSink:
    """Writes flushed usage into the billing database.

    Each flush is a single transaction that bumps the site's running totals
    and upserts the ``(site_id, hour_start)`` rollup row, so either both
    changes land or neither does.
    """

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._lock = asyncio.Lock()

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("BillingSink not opened")
        return self._engine

    async def open(self) -> None:
        async with self._lock:
            if self._engine is not None:
                return
            url = make_url(self._database_url)
            engine_kwargs: dict[str, Any] = {"future": True, "echo": False}
            if url.drivername.startswith("sqlite") and (not url.database or url.database == ":memory:"):
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}
            self._engine = create_async_engine(self._database_url, **engine_kwargs)
            await self.ensure_schema()
            LOGGER.debug("Billing sink initialised", url=url.render_as_string(hide_password=True))

    async def ensure_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        async with self._lock:
            if self._engine is None:
                return
            await self._engine.dispose()
            self._engine = None

    async def lookup_site_id(self, domain: str) -> Optional[int]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(sites_table.c.id).where(sites_table.c.domain == domain.lower()))
            site_id = result.scalar_one_or_none()
        return int(site_id) if site_id is not None else None

    async def record_usage(
        self,
        site_id: int,
        *,
        requests: int,
        cache_hits: int,
        cache_misses: int,
        now: int,
    ) -> None:
        hour_start = hour_bucket(now)
        async with self.engine.begin() as conn:
            await conn.execute(
                update(sites_table)
                .where(sites_table.c.id == site_id)
                .values(
                    cache_hits=sites_table.c.cache_hits + cache_hits,
                    cache_misses=sites_table.c.cache_misses + cache_misses,
                    updated_at=now,
                )
            )
            result = await conn.execute(
                update(usage_hourly_table)
                .where(usage_hourly_table.c.site_id == site_id)
                .where(usage_hourly_table.c.hour_start == hour_start)
                .values(
                    requests=usage_hourly_table.c.requests + requests,
                    cache_hits=usage_hourly_table.c.cache_hits + cache_hits,
                    cache_misses=usage_hourly_table.c.cache_misses + cache_misses,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                await conn.execute(
                    insert(usage_hourly_table).values(
                        site_id=site_id,
                        hour_start=hour_start,
                        requests=requests,
                        cache_hits=cache_hits,
                        cache_misses=cache_misses,
                        created_at=now,
                        updated_at=now,
                    )
                )
        LOGGER.debug(
            "usage_recorded",
            site_id=site_id,
            hour_start=hour_start,
            requests=requests,
            cache_hits=cache_hits,
            cache_misses=cache_misses,
        )
