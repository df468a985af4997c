"""Object store adapters serving media assets from S3-compatible or local storage."""

from __future__ import annotations

import asyncio
import hashlib
import mimetypes
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

import boto3
from botocore.exceptions import ClientError
import structlog

from ..common.settings import GatewaySettings


LOGGER = structlog.get_logger("blackroad_cdn.store")

# S3 stores this when an object was uploaded without a Content-Type
S3_UNTYPED_CONTENT = "binary/octet-stream"


class StoreMiss(str, Enum):
    NOT_FOUND = "not_found"
    NOT_MODIFIED = "not_modified"


class StoreUnavailableError(Exception):
    """The object store could not be reached or keeps failing."""


@dataclass(frozen=True)
class ObjectMetadata:
    size: int
    etag: str
    content_type: Optional[str] = None


@dataclass
class StoredObject:
    """An object fetched for a single response.

    ``body`` yields the object's bytes lazily; ``release`` frees the underlying
    stream and is safe to call more than once.
    """

    size: int
    etag: str
    body: AsyncIterator[bytes]
    content_type: Optional[str] = None
    release: Callable[[], None] = field(default=lambda: None, repr=False)

    async def aclose(self) -> None:
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None:
            await aclose()
        self.release()


GetResult = Union[StoredObject, StoreMiss]
HeadResult = Union[ObjectMetadata, StoreMiss]


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """Weak comparison of an ``If-None-Match`` header against an entity tag."""
    if not if_none_match:
        return False
    current = etag.strip().removeprefix("W/")
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.removeprefix("W/") == current:
            return True
    return False


class ObjectStore:
    async def get(self, key: str, match_etag: Optional[str] = None) -> GetResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def head(self, key: str, match_etag: Optional[str] = None) -> HeadResult:  # pragma: no cover - interface
        raise NotImplementedError

    def describe(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class CircuitBreaker:
    """Stops calling a failing store until ``reset_timeout`` has passed.

    ``failure_threshold`` consecutive failures open the circuit. Once the
    timeout elapses the circuit is half-open: the next call goes through, and
    a failure re-opens it at once while a success closes it.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, name: str, failure_threshold: int, reset_timeout: float):
        self.name = name
        self._threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            return self.HALF_OPEN
        return self.OPEN

    def allow_request(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        if self._opened_at is not None:
            LOGGER.info("circuit_closed", store=self.name)
        self._failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        half_open = self.state == self.HALF_OPEN
        self._failures += 1
        if half_open or (self._opened_at is None and self._failures >= self._threshold):
            self._opened_at = time.monotonic()
            LOGGER.warning("circuit_opened", store=self.name, failures=self._failures)


class LocalObjectStore(ObjectStore):
    """Serves files below a directory; keys are relative paths."""

    def __init__(self, root: Path, chunk_size: int = 1024 * 1024):
        self._root = root.expanduser().resolve()
        self._chunk_size = chunk_size

    def _resolve(self, key: str) -> Optional[Path]:
        try:
            candidate = self._root.joinpath(*key.split("/")).resolve(strict=False)
            if not candidate.is_relative_to(self._root) or not candidate.is_file():
                return None
        except (OSError, ValueError):
            # NUL bytes and over-long names are not addressable files
            return None
        return candidate

    def _metadata(self, path: Path) -> ObjectMetadata:
        stat = path.stat()
        fingerprint = hashlib.sha256(f"{stat.st_mtime_ns}-{stat.st_size}".encode()).hexdigest()[:32]
        content_type, _ = mimetypes.guess_type(path.name)
        return ObjectMetadata(size=stat.st_size, etag=f'"{fingerprint}"', content_type=content_type)

    def _lookup(self, key: str, match_etag: Optional[str]) -> tuple[Path, ObjectMetadata] | StoreMiss:
        path = self._resolve(key)
        if path is None:
            return StoreMiss.NOT_FOUND
        metadata = self._metadata(path)
        if etag_matches(match_etag, metadata.etag):
            return StoreMiss.NOT_MODIFIED
        return path, metadata

    async def head(self, key: str, match_etag: Optional[str] = None) -> HeadResult:
        result = await asyncio.to_thread(self._lookup, key, match_etag)
        if isinstance(result, StoreMiss):
            return result
        return result[1]

    async def get(self, key: str, match_etag: Optional[str] = None) -> GetResult:
        result = await asyncio.to_thread(self._lookup, key, match_etag)
        if isinstance(result, StoreMiss):
            return result
        path, metadata = result
        return StoredObject(
            size=metadata.size,
            etag=metadata.etag,
            content_type=metadata.content_type,
            body=iter_file(path, self._chunk_size),
        )

    def describe(self) -> dict[str, object]:
        return {
            "backend": "local",
            "storage_path": str(self._root),
            "readable": self._root.is_dir() and os.access(self._root, os.R_OK),
        }


async def iter_file(path: Path, chunk_size: int) -> AsyncIterator[bytes]:
    loop = asyncio.get_running_loop()
    with path.open("rb") as handle:
        while True:
            data = await loop.run_in_executor(None, handle.read, chunk_size)
            if not data:
                break
            yield data


async def iter_streaming_body(body, chunk_size: int) -> AsyncIterator[bytes]:
    try:
        while True:
            data = await asyncio.to_thread(body.read, chunk_size)
            if not data:
                break
            yield data
    finally:
        body.close()


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _http_status(exc: ClientError) -> Optional[int]:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def classify_client_error(exc: ClientError) -> Optional[StoreMiss]:
    """Map S3 errors that are answers rather than failures."""
    code = _error_code(exc)
    if code in {"404", "NoSuchKey", "NotFound"} or _http_status(exc) == 404:
        return StoreMiss.NOT_FOUND
    if code in {"304", "NotModified"} or _http_status(exc) == 304:
        return StoreMiss.NOT_MODIFIED
    return None


class S3ObjectStore(ObjectStore):
    def __init__(self, settings: GatewaySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._chunk_size = settings.stream_chunk_bytes
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            f"s3:{settings.s3_bucket}",
            failure_threshold=max(1, settings.s3_circuit_breaker_failures),
            reset_timeout=max(0.0, settings.s3_circuit_breaker_reset_seconds),
        )

    def _request(self, key: str, match_etag: Optional[str]) -> dict[str, str]:
        params = {"Bucket": self._bucket, "Key": key}
        if match_etag:
            params["IfNoneMatch"] = match_etag
        return params

    @staticmethod
    def _content_type(response: dict) -> Optional[str]:
        content_type = response.get("ContentType")
        if not content_type or content_type == S3_UNTYPED_CONTENT:
            return None
        return content_type

    async def get(self, key: str, match_etag: Optional[str] = None) -> GetResult:
        try:
            response = await self._call_with_retry(self._client.get_object, **self._request(key, match_etag))
        except ClientError as exc:
            return classify_client_error(exc) or StoreMiss.NOT_FOUND
        body = response["Body"]
        return StoredObject(
            size=int(response["ContentLength"]),
            etag=response["ETag"],
            content_type=self._content_type(response),
            body=iter_streaming_body(body, self._chunk_size),
            release=body.close,
        )

    async def head(self, key: str, match_etag: Optional[str] = None) -> HeadResult:
        try:
            response = await self._call_with_retry(self._client.head_object, **self._request(key, match_etag))
        except ClientError as exc:
            return classify_client_error(exc) or StoreMiss.NOT_FOUND
        return ObjectMetadata(
            size=int(response["ContentLength"]),
            etag=response["ETag"],
            content_type=self._content_type(response),
        )

    def describe(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit": self._breaker.state,
        }

    async def _call_with_retry(self, func: Callable[..., dict], **kwargs) -> dict:
        """Call the S3 client off the event loop.

        ``ClientError`` escapes only for 404/304 answers; every other failure is
        retried and finally surfaces as ``StoreUnavailableError``.
        """
        if not self._breaker.allow_request():
            raise StoreUnavailableError("Object store circuit open")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except ClientError as exc:
                if classify_client_error(exc) is not None:
                    self._breaker.record_success()
                    raise
                failure: Exception = exc
            except Exception as exc:  # noqa: BLE001
                failure = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                LOGGER.warning("s3_request_failed", bucket=self._bucket, attempts=attempt, error=str(failure))
                raise StoreUnavailableError("Object store request failed") from failure
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            if delay:
                await asyncio.sleep(delay)


def build_store(settings: GatewaySettings) -> Optional[ObjectStore]:
    if settings.s3_bucket:
        return S3ObjectStore(settings)
    if settings.storage_path is not None:
        return LocalObjectStore(settings.storage_path, chunk_size=settings.stream_chunk_bytes)
    return None
