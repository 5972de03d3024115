from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import select

from imgpro.usage.billing import BillingSink, hour_bucket, sites_table, usage_hourly_table
from imgpro.usage.store import UsageStateStore


def _sqlite(tmp_path: Path, name: str) -> str:
    return f"sqlite+aiosqlite:///{(tmp_path / name).as_posix()}"


@pytest.mark.asyncio
async def test_state_store_round_trip(tmp_path: Path) -> None:
    store = UsageStateStore(_sqlite(tmp_path, "state/usage.db"))
    await store.open()
    try:
        assert await store.load(7) is None

        await store.put(7, domain="example.com", requests=3, cache_hits=2, cache_misses=1)
        await store.put(7, flush_failures=2)
        loaded = await store.load(7)
    finally:
        await store.close()

    assert loaded is not None
    assert (loaded.domain, loaded.requests, loaded.cache_hits, loaded.cache_misses) == ("example.com", 3, 2, 1)
    assert loaded.flush_failures == 2
    assert loaded.next_flush_at is None


@pytest.mark.asyncio
async def test_state_store_survives_reopen(tmp_path: Path) -> None:
    url = _sqlite(tmp_path, "usage.db")
    first = UsageStateStore(url)
    await first.open()
    await first.put(1, domain="a.com", requests=5, cache_hits=5, cache_misses=0)
    await first.set_alarm(1, 1_000.0)
    await first.close()

    second = UsageStateStore(url)
    await second.open()
    try:
        loaded = await second.load(1)
        alarm = await second.get_alarm(1)
    finally:
        await second.close()

    assert loaded.requests == 5
    assert alarm == 1_000.0


@pytest.mark.asyncio
async def test_state_store_alarms(tmp_path: Path) -> None:
    store = UsageStateStore("sqlite+aiosqlite:///:memory:")
    await store.open()
    try:
        await store.set_alarm(1, 100.0)
        await store.set_alarm(2, 50.0)
        await store.set_alarm(3, 500.0)
        await store.put(4, domain="no-alarm.com", requests=1, cache_hits=1, cache_misses=0)

        assert await store.due_alarms(200.0) == [2, 1]

        await store.set_alarm(2, 260.0)
        assert await store.get_alarm(2) == 260.0
        assert await store.due_alarms(200.0) == [1]

        await store.delete_all(1)
        assert await store.load(1) is None
        assert await store.get_alarm(1) is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_state_store_rejects_unknown_fields() -> None:
    store = UsageStateStore("sqlite+aiosqlite:///:memory:")
    await store.open()
    try:
        with pytest.raises(ValueError):
            await store.put(1, next_flush_at=1.0)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_state_store_requires_open() -> None:
    store = UsageStateStore("sqlite+aiosqlite:///:memory:")

    with pytest.raises(RuntimeError):
        await store.load(1)


def test_hour_bucket_floors_to_hour() -> None:
    assert hour_bucket(1_700_000_000) == 1_699_999_200
    assert hour_bucket(3600) == 3600
    assert hour_bucket(7199) == 3600


@pytest.mark.asyncio
async def test_billing_sink_records_totals_and_hourly_rollup(tmp_path: Path) -> None:
    sink = BillingSink(_sqlite(tmp_path, "billing.db"))
    await sink.open()
    try:
        async with sink.engine.begin() as conn:
            await conn.execute(sites_table.insert().values(id=42, domain="example.com", cache_hits=10, cache_misses=4))

        await sink.record_usage(42, requests=5, cache_hits=3, cache_misses=2, now=7200)
        await sink.record_usage(42, requests=2, cache_hits=1, cache_misses=1, now=7300)
        await sink.record_usage(42, requests=1, cache_hits=0, cache_misses=1, now=10_800)

        async with sink.engine.connect() as conn:
            site = (await conn.execute(select(sites_table).where(sites_table.c.id == 42))).mappings().one()
            hours = (
                await conn.execute(select(usage_hourly_table).order_by(usage_hourly_table.c.hour_start))
            ).mappings().all()
    finally:
        await sink.close()

    assert (site["cache_hits"], site["cache_misses"], site["updated_at"]) == (14, 8, 10_800)
    assert [(row["hour_start"], row["requests"], row["cache_hits"], row["cache_misses"]) for row in hours] == [
        (7200, 7, 4, 3),
        (10_800, 1, 0, 1),
    ]
    assert hours[0]["created_at"] == 7200
    assert hours[0]["updated_at"] == 7300


@pytest.mark.asyncio
async def test_billing_sink_looks_up_sites_case_insensitively(tmp_path: Path) -> None:
    sink = BillingSink(_sqlite(tmp_path, "billing.db"))
    await sink.open()
    try:
        async with sink.engine.begin() as conn:
            await conn.execute(sites_table.insert().values(id=9, domain="photos.example.com", cache_hits=0, cache_misses=0))

        assert await sink.lookup_site_id("Photos.Example.com") == 9
        assert await sink.lookup_site_id("unknown.example.com") is None
    finally:
        await sink.close()
