"""Shared data models for the edge service and usage aggregator."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    """JSON body returned for every failed request."""

    error: str
    status: int


class DeleteResult(BaseModel):
    """Body returned after a cache entry is invalidated."""

    success: bool = True
    message: str = "Image deleted from cache"
    cache_key: str = Field(serialization_alias="cacheKey")


class UsageEvent(BaseModel):
    """One served image, addressed to the aggregator of ``site_id``."""

    site_id: int
    domain: str
    cache_hit: bool


class UsageCounters(BaseModel):
    """Point-in-time copy of one site's accumulated counters."""

    site_id: int = 0
    domain: str = ""
    requests: int = Field(0, ge=0)
    cache_hits: int = Field(0, ge=0)
    cache_misses: int = Field(0, ge=0)
    consecutive_flush_failures: int = Field(0, ge=0)
