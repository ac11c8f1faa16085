from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from eoty_library import models
from eoty_library.core.config import settings
from eoty_library.core.errors import LibraryError
from eoty_library.core.storage import BlobStore


logger = logging.getLogger(__name__)

BATCH_SIZE = 500


def referenced_handles(db: Session, handles: list[str]) -> set[str]:
    resource = models.Resource
    found: set[str] = set()
    for start in range(0, len(handles), BATCH_SIZE):
        batch = handles[start : start + BATCH_SIZE]
        found.update(
            row[0] for row in db.query(resource.blob_handle).filter(resource.blob_handle.in_(batch)).all()
        )
        found.update(
            row[0] for row in db.query(resource.text_handle).filter(resource.text_handle.in_(batch)).all()
        )
    return found


def sweep_orphans(
    db: Session,
    blob_store: BlobStore,
    *,
    grace_seconds: int | None = None,
    now: datetime | None = None,
    dry_run: bool = False,
) -> dict[str, int]:
    """Delete blobs that no resource references and that are past the grace period.

    Blobs younger than the grace period are kept, since an upload writes its
    blob before the resource row commits.
    """
    grace = settings.ORPHAN_GRACE_SECONDS if grace_seconds is None else grace_seconds
    cutoff = (now or models.utc_now()) - timedelta(seconds=grace)

    candidates = [
        handle
        for handle, modified_at in blob_store.list_handles()
        if modified_at is not None and modified_at <= cutoff
    ]
    in_use = referenced_handles(db, candidates)
    orphans = [handle for handle in candidates if handle not in in_use]

    deleted_count = 0
    failed_count = 0
    if not dry_run:
        for handle in orphans:
            try:
                blob_store.delete(handle)
                deleted_count += 1
            except LibraryError:
                failed_count += 1
                logger.exception("orphan blob delete failed for %s", handle[:12])

    return {
        "scanned_count": len(candidates),
        "orphan_count": len(orphans),
        "deleted_count": deleted_count,
        "failed_count": failed_count,
    }
