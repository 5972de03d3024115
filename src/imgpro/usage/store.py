"""Durable per-site counter and alarm storage for the usage aggregator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog
from sqlalchemy import BigInteger, Column, DateTime, Float, MetaData, String, Table, delete, insert, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

LOGGER = structlog.get_logger("imgpro.usage.store")


metadata = MetaData()


usage_counters_table = Table(
    "usage_counters",
    metadata,
    Column("site_id", BigInteger, primary_key=True, autoincrement=False),
    Column("domain", String(length=255), nullable=False, default=""),
    Column("requests", BigInteger, nullable=False, default=0),
    Column("cache_hits", BigInteger, nullable=False, default=0),
    Column("cache_misses", BigInteger, nullable=False, default=0),
    Column("flush_failures", BigInteger, nullable=False, default=0),
    Column("next_flush_at", Float, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

COUNTER_FIELDS = frozenset({"domain", "requests", "cache_hits", "cache_misses", "flush_failures"})


@dataclass(slots=True)
class StoredUsage:
    """Persisted state of one site's aggregator."""

    site_id: int
    domain: str
    requests: int
    cache_hits: int
    cache_misses: int
    flush_failures: int
    next_flush_at: Optional[float]


class UsageStateStore:
    """SQL-backed storage that outlives any in-memory tracker instance."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        async with self._lock:
            if self._engine is not None:
                return

            url = make_url(self._database_url)
            engine_kwargs: dict[str, Any] = {"future": True, "echo": False}
            if url.drivername.startswith("sqlite"):
                if url.database and url.database != ":memory:":
                    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
                else:
                    engine_kwargs["poolclass"] = StaticPool
                    engine_kwargs["connect_args"] = {"check_same_thread": False}

            self._engine = create_async_engine(self._database_url, **engine_kwargs)
            self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            LOGGER.debug("Usage state store initialised", url=url.render_as_string(hide_password=True))

    async def close(self) -> None:
        async with self._lock:
            if self._engine is None:
                return
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("UsageStateStore not opened")
        return self._session_factory

    async def load(self, site_id: int) -> Optional[StoredUsage]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(usage_counters_table).where(usage_counters_table.c.site_id == site_id)
            )
            row = result.mappings().first()
        if row is None:
            return None
        return StoredUsage(
            site_id=row["site_id"],
            domain=row["domain"] or "",
            requests=int(row["requests"] or 0),
            cache_hits=int(row["cache_hits"] or 0),
            cache_misses=int(row["cache_misses"] or 0),
            flush_failures=int(row["flush_failures"] or 0),
            next_flush_at=row["next_flush_at"],
        )

    async def put(self, site_id: int, **values: Any) -> None:
        """Write the given counter fields for ``site_id`` in one transaction."""
        unknown = set(values) - COUNTER_FIELDS
        if unknown:
            raise ValueError(f"Unknown usage fields: {sorted(unknown)}")
        await self._upsert(site_id, values)

    async def get_alarm(self, site_id: int) -> Optional[float]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(usage_counters_table.c.next_flush_at).where(usage_counters_table.c.site_id == site_id)
            )
            return result.scalar_one_or_none()

    async def set_alarm(self, site_id: int, fire_at: float) -> None:
        await self._upsert(site_id, {"next_flush_at": float(fire_at)})

    async def delete_all(self, site_id: int) -> None:
        async with self._sessions()() as session:
            await session.execute(delete(usage_counters_table).where(usage_counters_table.c.site_id == site_id))
            await session.commit()
        LOGGER.debug("Usage state cleared", site_id=site_id)

    async def due_alarms(self, now: float) -> list[int]:
        """Sites whose persisted flush time has passed, oldest first."""
        async with self._sessions()() as session:
            result = await session.execute(
                select(usage_counters_table.c.site_id)
                .where(usage_counters_table.c.next_flush_at.is_not(None))
                .where(usage_counters_table.c.next_flush_at <= now)
                .order_by(usage_counters_table.c.next_flush_at)
            )
            return [int(site_id) for site_id in result.scalars()]

    async def _upsert(self, site_id: int, values: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        async with self._sessions()() as session:
            result = await session.execute(
                update(usage_counters_table)
                .where(usage_counters_table.c.site_id == site_id)
                .values(**values, updated_at=now)
            )
            if result.rowcount == 0:
                await session.execute(
                    insert(usage_counters_table).values(
                        site_id=site_id,
                        domain=values.get("domain", ""),
                        requests=values.get("requests", 0),
                        cache_hits=values.get("cache_hits", 0),
                        cache_misses=values.get("cache_misses", 0),
                        flush_failures=values.get("flush_failures", 0),
                        next_flush_at=values.get("next_flush_at"),
                        updated_at=now,
                    )
                )
            await session.commit()
