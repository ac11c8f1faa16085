from __future__ import annotations

import hashlib
import re
from datetime import datetime
from functools import lru_cache
from io import BytesIO
from typing import Protocol

import urllib3
from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError, MaxRetryError, TimeoutError as Urllib3Timeout

from eoty_library.core.config import settings
from eoty_library.core.errors import NotFound, StorageFailure, UpstreamTimeout


HANDLE_PATTERN = re.compile(r"^[0-9a-f]{64}$")
MISSING_CODES = {"nosuchkey", "nosuchobject", "notfound"}


def content_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def normalize_handle(handle: str) -> str:
    value = (handle or "").strip().lower()
    if not HANDLE_PATTERN.match(value):
        raise ValueError("Invalid blob handle")
    return value


def build_object_key(handle: str, prefix: str | None = None) -> str:
    value = normalize_handle(handle)
    base = (prefix if prefix is not None else settings.BLOB_PREFIX).strip("/")
    return f"{base}/{value[:2]}/{value}"


def handle_from_key(object_key: str) -> str | None:
    name = object_key.rstrip("/").rsplit("/", 1)[-1]
    return name if HANDLE_PATTERN.match(name) else None


def _transport_error(error: HTTPError, action: str, key: str) -> Exception:
    reason = error.reason if isinstance(error, MaxRetryError) else error
    if isinstance(reason, Urllib3Timeout):
        return UpstreamTimeout(f"Blob {action} timed out: {key}")
    return StorageFailure(f"Blob {action} failed: {error}")


class BlobStore(Protocol):
    def put(self, handle: str, payload: bytes, content_type: str = "application/octet-stream") -> None: ...

    def get(self, handle: str) -> bytes: ...

    def delete(self, handle: str) -> None: ...

    def exists(self, handle: str) -> bool: ...

    def list_handles(self) -> list[tuple[str, datetime | None]]: ...


class MinioBlobStore:
    """Content-addressed blob store on a MinIO/S3 bucket.

    Objects live under ``<prefix>/<first two hex chars>/<sha256>``. Writing the
    same handle twice overwrites identical bytes, so puts are idempotent.
    """

    def __init__(self, client: Minio, bucket: str, prefix: str) -> None:
        self._client = client
        self._bucket = bucket
        self._prefix = prefix

    def _key(self, handle: str) -> str:
        return build_object_key(handle, self._prefix)

    def put(self, handle: str, payload: bytes, content_type: str = "application/octet-stream") -> None:
        key = self._key(handle)
        try:
            self._client.put_object(
                self._bucket,
                key,
                BytesIO(payload),
                length=len(payload),
                content_type=content_type,
            )
        except S3Error as error:
            raise StorageFailure(f"Blob write failed: {error}") from error
        except HTTPError as error:
            raise _transport_error(error, "write", key) from error

    def get(self, handle: str) -> bytes:
        key = self._key(handle)
        try:
            response = self._client.get_object(self._bucket, key)
        except S3Error as error:
            if (error.code or "").lower() in MISSING_CODES:
                raise NotFound("Blob not found") from error
            raise StorageFailure(f"Blob read failed: {error}") from error
        except HTTPError as error:
            raise _transport_error(error, "read", key) from error

        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def delete(self, handle: str) -> None:
        key = self._key(handle)
        try:
            self._client.remove_object(self._bucket, key)
        except S3Error as error:
            raise StorageFailure(f"Blob delete failed: {error}") from error
        except HTTPError as error:
            raise _transport_error(error, "delete", key) from error

    def exists(self, handle: str) -> bool:
        key = self._key(handle)
        try:
            self._client.stat_object(self._bucket, key)
            return True
        except S3Error as error:
            if (error.code or "").lower() in MISSING_CODES:
                return False
            raise StorageFailure(f"Blob stat failed: {error}") from error
        except HTTPError as error:
            raise _transport_error(error, "stat", key) from error

    def list_handles(self) -> list[tuple[str, datetime | None]]:
        try:
            items = list(
                self._client.list_objects(
                    self._bucket,
                    prefix=f"{self._prefix.strip('/')}/",
                    recursive=True,
                )
            )
        except (S3Error, HTTPError) as error:
            raise StorageFailure(f"Blob listing failed: {error}") from error

        rows: list[tuple[str, datetime | None]] = []
        for item in items:
            handle = handle_from_key(item.object_name or "")
            if handle:
                rows.append((handle, item.last_modified))
        return rows

    def healthcheck(self) -> bool:
        try:
            return self._client.bucket_exists(self._bucket)
        except (S3Error, HTTPError):
            return False


def _build_client() -> Minio:
    timeout = float(settings.BLOB_TIMEOUT_SECONDS)
    http_client = urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=timeout, read=timeout),
        retries=urllib3.Retry(total=0),
    )
    return Minio(
        settings.MINIO_ENDPOINT,
        access_key=settings.MINIO_ACCESS_KEY,
        secret_key=settings.MINIO_SECRET_KEY,
        secure=settings.MINIO_SECURE,
        http_client=http_client,
    )


@lru_cache(maxsize=1)
def get_blob_store() -> MinioBlobStore:
    return MinioBlobStore(_build_client(), settings.MINIO_BUCKET, settings.BLOB_PREFIX)
