from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from eoty_library import models
from eoty_library.core import access, extraction, file_types, telemetry
from eoty_library.core.access import Action, CallerContext
from eoty_library.core.config import settings
from eoty_library.core.errors import (
    InvalidScope,
    LibraryError,
    NotFound,
    TooLarge,
    UnsupportedType,
    UpstreamTimeout,
)
from eoty_library.core.retry import backoff_delay, call_with_retry, run_with_deadline
from eoty_library.core.storage import BlobStore, content_hash


logger = logging.getLogger(__name__)

SCOPES_WITH_COMPANION = {
    models.ResourceScope.course_specific,
    models.ResourceScope.chapter_wide,
}


@dataclass(frozen=True)
class UploadFields:
    title: str
    description: str | None = None
    category: str | None = None
    tags: tuple[str, ...] = ()
    language: str | None = None
    topic: str | None = None
    author_id: str | None = None


class ProcessingQueue(Protocol):
    def enqueue(self, resource_id: int) -> bool: ...


def normalize_tags(raw_tags) -> list[str]:
    if not raw_tags:
        return []
    cleaned = [str(tag).strip().lower() for tag in raw_tags if str(tag).strip()]
    return list(dict.fromkeys(cleaned))


def validate_scope(scope: models.ResourceScope, companion_id: str | None) -> str | None:
    companion = (companion_id or "").strip() or None
    if scope in SCOPES_WITH_COMPANION and companion is None:
        raise InvalidScope(f"Scope {scope.value} requires a companion id")
    if scope not in SCOPES_WITH_COMPANION and companion is not None:
        raise InvalidScope(f"Scope {scope.value} does not take a companion id")
    return companion


def _record_unsupported(
    db: Session,
    caller: CallerContext,
    filename: str,
    file_type: str,
    mime: str | None,
    size: int,
    message: str,
) -> None:
    db.add(
        models.UnsupportedFileAttempt(
            user_id=caller.user_id,
            file_name=filename[:255],
            file_type=file_type,
            mime_type=mime,
            file_size=size,
            error_message=message,
        )
    )
    db.commit()


def upload(
    db: Session,
    blob_store: BlobStore,
    queue: ProcessingQueue,
    caller: CallerContext,
    *,
    data: bytes,
    filename: str,
    mime: str | None,
    scope: models.ResourceScope,
    companion_id: str | None,
    fields: UploadFields,
) -> models.Resource:
    access.ensure(db, Action.upload, None, caller)
    companion = validate_scope(scope, companion_id)

    size = len(data)
    if size > settings.MAX_UPLOAD_BYTES:
        raise TooLarge(
            f"File exceeds {settings.MAX_UPLOAD_BYTES} bytes",
            details={"size_bytes": size, "limit_bytes": settings.MAX_UPLOAD_BYTES},
        )

    normalized_mime = file_types.normalize_mime(mime)
    file_type = file_types.detect_file_type(filename, normalized_mime)
    if normalized_mime not in settings.allowed_mime_types or file_type == "other":
        message = f'File type "{normalized_mime or Path(filename).suffix or "unknown"}" is not supported'
        _record_unsupported(db, caller, filename, file_type, normalized_mime or None, size, message)
        raise UnsupportedType(message, details={"mime_type": normalized_mime, "file_type": file_type})

    handle = content_hash(data)
    call_with_retry(
        lambda: blob_store.put(handle, data, normalized_mime),
        max_retries=settings.UPSTREAM_MAX_RETRIES,
        base_seconds=settings.UPSTREAM_RETRY_BASE_SECONDS,
        label=f"blob put {handle[:12]}",
    )

    resource = models.Resource(
        title=fields.title.strip()[:255],
        description=(fields.description or "").strip() or None,
        category=(fields.category or "").strip() or None,
        mime_type=normalized_mime,
        file_type=file_type,
        original_filename=Path(filename).name[:255],
        blob_handle=handle,
        size_bytes=size,
        language=(fields.language or "").strip() or None,
        topic=(fields.topic or "").strip() or None,
        author_id=(fields.author_id or "").strip() or caller.user_id,
        owner_id=caller.user_id,
        scope=scope,
        companion_id=companion,
        status=models.ProcessingStatus.pending,
    )
    resource.tag_links = [models.ResourceTagLink(tag=tag) for tag in normalize_tags(fields.tags)]
    db.add(resource)
    db.flush()
    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.upload,
        resource_id=resource.id,
        metadata={"file_type": file_type, "size_bytes": size, "blob_handle": handle},
    )
    db.commit()
    db.refresh(resource)

    logger.info(
        "resource uploaded: id=%s type=%s size=%s scope=%s",
        resource.id,
        file_type,
        size,
        scope.value,
    )
    if not queue.enqueue(resource.id):
        logger.warning("processing queue rejected resource_id=%s; it stays pending", resource.id)
    return resource


def _transition(
    db: Session,
    resource_id: int,
    expected: models.ProcessingStatus,
    target: models.ProcessingStatus,
    **values,
) -> bool:
    result = db.execute(
        update(models.Resource)
        .where(
            models.Resource.id == resource_id,
            models.Resource.status == expected,
        )
        .values(status=target, updated_at=models.utc_now(), **values)
    )
    db.commit()
    return result.rowcount == 1


def _extract(blob_store: BlobStore, blob_handle: str, file_type: str) -> str | None:
    payload = blob_store.get(blob_handle)
    return extraction.extract_text(file_type, payload)


def process_resource(
    session_factory: Callable[[], Session],
    blob_store: BlobStore,
    resource_id: int,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> models.ProcessingStatus | None:
    """Extract the text of an uploaded resource and settle its status.

    Safe under duplicate delivery: only the task that moves the row from
    ``pending`` to ``extracting`` does any work.
    """
    db = session_factory()
    try:
        if not _transition(db, resource_id, models.ProcessingStatus.pending, models.ProcessingStatus.extracting):
            logger.info("resource_id=%s not pending, skipping processing", resource_id)
            return None

        resource = db.get(models.Resource, resource_id)
        if resource is None:
            return None
        blob_handle = resource.blob_handle
        file_type = resource.file_type

        deadline = time.monotonic() + settings.PROCESSING_TASK_DEADLINE_SECONDS
        attempts = 0
        text: str | None = None
        while True:
            attempts += 1
            try:
                text = run_with_deadline(
                    lambda: _extract(blob_store, blob_handle, file_type),
                    deadline - time.monotonic(),
                    label=f"processing resource_id={resource_id}",
                )
                break
            except (extraction.ExtractionError, LibraryError) as error:
                if isinstance(error, UpstreamTimeout) and time.monotonic() >= deadline:
                    logger.warning("processing timed out: resource_id=%s attempts=%s", resource_id, attempts)
                    _transition(
                        db,
                        resource_id,
                        models.ProcessingStatus.extracting,
                        models.ProcessingStatus.failed,
                        processing_error="timeout",
                        processing_attempts=attempts,
                    )
                    return models.ProcessingStatus.failed
                if attempts > settings.PROCESSING_MAX_RETRIES:
                    logger.warning(
                        "processing failed: resource_id=%s attempts=%s error=%s",
                        resource_id,
                        attempts,
                        error,
                    )
                    _transition(
                        db,
                        resource_id,
                        models.ProcessingStatus.extracting,
                        models.ProcessingStatus.failed,
                        processing_error=str(error)[:2000],
                        processing_attempts=attempts,
                    )
                    return models.ProcessingStatus.failed
                sleep(backoff_delay(attempts, settings.PROCESSING_RETRY_BASE_SECONDS, jitter=False))

        if text is None and not file_types.is_textless(file_type):
            _transition(
                db,
                resource_id,
                models.ProcessingStatus.extracting,
                models.ProcessingStatus.failed,
                processing_error=f"no text extractor for {file_type}",
                processing_attempts=attempts,
            )
            return models.ProcessingStatus.failed

        text_handle = None
        if text is not None:
            encoded = text.encode("utf-8")
            text_handle = content_hash(encoded)
            call_with_retry(
                lambda: blob_store.put(text_handle, encoded, "text/plain; charset=utf-8"),
                max_retries=settings.UPSTREAM_MAX_RETRIES,
                base_seconds=settings.UPSTREAM_RETRY_BASE_SECONDS,
                label=f"text put resource_id={resource_id}",
                sleep=sleep,
            )

        _transition(
            db,
            resource_id,
            models.ProcessingStatus.extracting,
            models.ProcessingStatus.ready,
            text_handle=text_handle,
            processing_error=None,
            processing_attempts=attempts,
        )
        logger.info("resource ready: id=%s type=%s text=%s", resource_id, file_type, bool(text_handle))
        return models.ProcessingStatus.ready
    except LibraryError as error:
        logger.exception("processing aborted for resource_id=%s", resource_id)
        _transition(
            db,
            resource_id,
            models.ProcessingStatus.extracting,
            models.ProcessingStatus.failed,
            processing_error=str(error)[:2000],
        )
        return models.ProcessingStatus.failed
    except Exception as error:  # noqa: BLE001
        logger.exception("processing crashed for resource_id=%s", resource_id)
        db.rollback()
        _transition(
            db,
            resource_id,
            models.ProcessingStatus.extracting,
            models.ProcessingStatus.failed,
            processing_error=f"{type(error).__name__}: {error}"[:2000],
        )
        return models.ProcessingStatus.failed
    finally:
        db.close()


def _stale_cutoff():
    return models.utc_now() - timedelta(seconds=settings.PROCESSING_TASK_DEADLINE_SECONDS)


def recover_stale_extracting(db: Session, resource_id: int | None = None) -> list[int]:
    """Send rows stuck in ``extracting`` past the task deadline back to ``pending``.

    Covers workers that died mid-task, e.g. a process restart.
    """
    query = db.query(models.Resource.id).filter(
        models.Resource.status == models.ProcessingStatus.extracting,
        models.Resource.updated_at < _stale_cutoff(),
    )
    if resource_id is not None:
        query = query.filter(models.Resource.id == resource_id)
    recovered = []
    for (stale_id,) in query.order_by(models.Resource.id.asc()).all():
        if _transition(
            db,
            stale_id,
            models.ProcessingStatus.extracting,
            models.ProcessingStatus.pending,
            processing_error=None,
            processing_attempts=0,
        ):
            recovered.append(stale_id)
    if recovered:
        logger.warning("recovered stale extracting resources: ids=%s", recovered)
    return recovered


def reprocess(db: Session, queue: ProcessingQueue, caller: CallerContext, resource_id: int) -> models.Resource:
    access.ensure(db, Action.administer, None, caller)
    resource = access.load_resource(db, resource_id)
    if resource is None:
        raise NotFound("Resource not found")
    if resource.status == models.ProcessingStatus.failed:
        _transition(
            db,
            resource_id,
            models.ProcessingStatus.failed,
            models.ProcessingStatus.pending,
            processing_error=None,
            processing_attempts=0,
        )
        db.refresh(resource)
    elif resource.status == models.ProcessingStatus.extracting and recover_stale_extracting(db, resource_id):
        db.refresh(resource)
    if resource.status == models.ProcessingStatus.pending:
        queue.enqueue(resource_id)
    return resource


def pending_resource_ids(db: Session) -> list[int]:
    rows = (
        db.query(models.Resource.id)
        .filter(models.Resource.status == models.ProcessingStatus.pending)
        .order_by(models.Resource.id.asc())
        .all()
    )
    return [row[0] for row in rows]


class ProcessingPool:
    """Worker pool for resource processing, owned by the application lifecycle."""

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        *,
        workers: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, workers or settings.PROCESSING_WORKERS),
            thread_name_prefix="resource-processing",
        )
        self._closed = threading.Event()

    def enqueue(self, resource_id: int) -> bool:
        if self._closed.is_set():
            return False
        try:
            future = self._executor.submit(
                process_resource,
                self._session_factory,
                self._blob_store,
                resource_id,
            )
        except RuntimeError:
            return False
        future.add_done_callback(lambda done: self._log_outcome(resource_id, done))
        return True

    def requeue_pending(self) -> int:
        db = self._session_factory()
        try:
            recover_stale_extracting(db)
            ids = pending_resource_ids(db)
        finally:
            db.close()
        for resource_id in ids:
            self.enqueue(resource_id)
        if ids:
            logger.info("requeued pending resources: count=%s", len(ids))
        return len(ids)

    def shutdown(self) -> None:
        self._closed.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _log_outcome(resource_id: int, future: Future) -> None:
        if future.cancelled():
            logger.info("processing cancelled for resource_id=%s", resource_id)
            return
        error = future.exception()
        if error is not None:
            logger.error("processing crashed for resource_id=%s", resource_id, exc_info=error)
