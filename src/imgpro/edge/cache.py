"""Image object storage on local disk or S3-compatible buckets."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from ..common.settings import EdgeSettings
from .errors import StorageError

LOGGER = structlog.get_logger("imgpro.edge.cache")

CACHE_CONTROL = "public, max-age=31536000, immutable"
DEFAULT_CONTENT_TYPE = "image/jpeg"
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class CacheEntry:
    """A stored image; ``body`` is ``None`` for metadata-only lookups."""

    key: str
    size: int
    content_type: str
    etag: str
    uploaded_at: datetime
    cached_at: str
    source_url: str
    domain: str
    body: Optional[bytes] = None

    @property
    def http_etag(self) -> str:
        return f'"{self.etag}"'


def compute_etag(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()  # noqa: S324 - content fingerprint, not security


def etag_matches(etag: str, if_none_match: Optional[str]) -> bool:
    """True only when ``If-None-Match`` is exactly the quoted stored ETag."""
    return bool(if_none_match) and if_none_match == f'"{etag}"'


class CacheBackend:
    async def put(
        self,
        cache_key: str,
        data: bytes,
        content_type: str,
        source_url: str,
        domain: str,
    ) -> CacheEntry:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def head(self, cache_key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def delete(self, cache_key: str) -> None:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


class LocalCacheBackend(CacheBackend):
    """Stores each entry as ``<sha256>.bin`` plus a ``<sha256>.json`` metadata sidecar.

    Hashing the key keeps arbitrary request paths inside the storage root and
    lets ``a.jpg`` and ``a.jpg/b.jpg`` coexist.
    """

    def __init__(self, storage_path: Path):
        self._root = storage_path

    def _paths(self, cache_key: str) -> tuple[Path, Path]:
        digest = hashlib.sha256(cache_key.encode("utf-8")).hexdigest()
        base = self._root / digest[:2] / digest
        return base.with_suffix(".bin"), base.with_suffix(".json")

    async def put(self, cache_key: str, data: bytes, content_type: str, source_url: str, domain: str) -> CacheEntry:
        now = datetime.now(timezone.utc)
        entry = CacheEntry(
            key=cache_key,
            size=len(data),
            content_type=content_type,
            etag=compute_etag(data),
            uploaded_at=now,
            cached_at=now.isoformat(),
            source_url=source_url,
            domain=domain,
        )
        try:
            await asyncio.to_thread(self._write, cache_key, data, entry)
        except OSError as exc:
            raise StorageError(f"Failed to store {cache_key}: {exc}") from exc
        return entry

    def _write(self, cache_key: str, data: bytes, entry: CacheEntry) -> None:
        data_path, meta_path = self._paths(cache_key)
        data_path.parent.mkdir(parents=True, exist_ok=True)
        metadata = {
            "key": entry.key,
            "size": entry.size,
            "content_type": entry.content_type,
            "etag": entry.etag,
            "uploaded_at": entry.uploaded_at.isoformat(),
            "cached_at": entry.cached_at,
            "source_url": entry.source_url,
            "domain": entry.domain,
            "cache_control": CACHE_CONTROL,
        }
        data_tmp = data_path.with_suffix(".bin.tmp")
        meta_tmp = meta_path.with_suffix(".json.tmp")
        data_tmp.write_bytes(data)
        meta_tmp.write_text(json.dumps(metadata), encoding="utf-8")
        os.replace(data_tmp, data_path)
        os.replace(meta_tmp, meta_path)

    def _read_metadata(self, cache_key: str) -> Optional[CacheEntry]:
        _, meta_path = self._paths(cache_key)
        if not meta_path.exists():
            return None
        metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        return CacheEntry(
            key=metadata["key"],
            size=int(metadata["size"]),
            content_type=metadata.get("content_type") or DEFAULT_CONTENT_TYPE,
            etag=metadata["etag"],
            uploaded_at=datetime.fromisoformat(metadata["uploaded_at"]),
            cached_at=metadata.get("cached_at", ""),
            source_url=metadata.get("source_url", ""),
            domain=metadata.get("domain", ""),
        )

    def _read(self, cache_key: str) -> Optional[CacheEntry]:
        entry = self._read_metadata(cache_key)
        if entry is None:
            return None
        data_path, _ = self._paths(cache_key)
        if not data_path.exists():
            return None
        return replace(entry, body=data_path.read_bytes())

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            return await asyncio.to_thread(self._read, cache_key)
        except (OSError, ValueError, KeyError) as exc:
            raise StorageError(f"Failed to read {cache_key}: {exc}") from exc

    async def head(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            return await asyncio.to_thread(self._read_metadata, cache_key)
        except (OSError, ValueError, KeyError) as exc:
            raise StorageError(f"Failed to read {cache_key}: {exc}") from exc

    async def delete(self, cache_key: str) -> None:
        data_path, meta_path = self._paths(cache_key)
        try:
            meta_path.unlink(missing_ok=True)
            data_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {cache_key}: {exc}") from exc
        try:
            data_path.parent.rmdir()
        except OSError:
            pass

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


class S3CacheBackend(CacheBackend):
    def __init__(self, settings: EdgeSettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    async def put(self, cache_key: str, data: bytes, content_type: str, source_url: str, domain: str) -> CacheEntry:
        now = datetime.now(timezone.utc)
        cached_at = now.isoformat()
        response = await self._call_with_retry(
            self._client.put_object,
            Bucket=self._bucket,
            Key=cache_key,
            Body=data,
            ContentType=content_type,
            CacheControl=CACHE_CONTROL,
            Metadata={"source-url": source_url, "domain": domain, "cached-at": cached_at},
        )
        etag = str(response.get("ETag") or "").strip('"') or compute_etag(data)
        return CacheEntry(
            key=cache_key,
            size=len(data),
            content_type=content_type,
            etag=etag,
            uploaded_at=now,
            cached_at=cached_at,
            source_url=source_url,
            domain=domain,
        )

    async def get(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=cache_key)
        except _NotFound:
            return None
        body = await asyncio.to_thread(response["Body"].read)
        return replace(self._entry_from_response(cache_key, response), body=body)

    async def head(self, cache_key: str) -> Optional[CacheEntry]:
        try:
            response = await self._call_with_retry(self._client.head_object, Bucket=self._bucket, Key=cache_key)
        except _NotFound:
            return None
        return self._entry_from_response(cache_key, response)

    async def delete(self, cache_key: str) -> None:
        try:
            await self._call_with_retry(self._client.delete_object, Bucket=self._bucket, Key=cache_key)
        except _NotFound:
            return

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    @staticmethod
    def _entry_from_response(cache_key: str, response: dict) -> CacheEntry:
        metadata = response.get("Metadata") or {}
        uploaded_at = response.get("LastModified") or datetime.now(timezone.utc)
        return CacheEntry(
            key=cache_key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            etag=str(response.get("ETag", "")).strip('"'),
            uploaded_at=uploaded_at,
            cached_at=metadata.get("cached-at", ""),
            source_url=metadata.get("source-url", ""),
            domain=metadata.get("domain", ""),
        )

    async def _call_with_retry(self, func: Callable[..., object], **kwargs) -> dict:
        if not self._breaker.allow_request():
            raise StorageError("Cache backend temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result  # type: ignore[return-value]
            except ClientError as exc:
                code = str(exc.response.get("Error", {}).get("Code", ""))
                if code in _NOT_FOUND_CODES:
                    self._breaker.record_success()
                    raise _NotFound(kwargs.get("Key", "")) from exc
                failure: Exception = exc
            except Exception as exc:  # noqa: BLE001
                failure = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                LOGGER.error("s3_call_failed", operation=getattr(func, "__name__", "s3"), error=str(failure))
                raise StorageError("Cache backend temporarily unavailable") from failure
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)


class _NotFound(Exception):
    """Internal signal for a missing S3 object."""


def build_backend(settings: EdgeSettings) -> CacheBackend:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url and not settings.s3_region:
            raise RuntimeError("S3 configuration incomplete for image cache")
        return S3CacheBackend(settings)
    return LocalCacheBackend(settings.storage_path)
