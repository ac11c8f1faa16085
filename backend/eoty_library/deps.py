from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from eoty_library import models
from eoty_library.core import access
from eoty_library.core.access import Action, CallerContext
from eoty_library.core.ai_service import SummaryGenerator
from eoty_library.core.db_read_write import ReadSessionLocal, WriteSessionLocal
from eoty_library.core.errors import Internal, Unauthorized
from eoty_library.core.ingestion import ProcessingQueue
from eoty_library.core.security import decode_access_token
from eoty_library.core.storage import BlobStore, get_blob_store as _minio_blob_store


bearer_scheme = HTTPBearer(auto_error=False)


def get_db_write():
    db = WriteSessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_read():
    db = ReadSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _string_set(raw) -> frozenset[str]:
    if not isinstance(raw, (list, tuple)):
        return frozenset()
    return frozenset(str(item) for item in raw if str(item).strip())


def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerContext:
    if credentials is None:
        raise Unauthorized()
    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise Unauthorized("Invalid or expired token")

    try:
        role = models.UserRole(payload.get("role"))
    except ValueError as error:
        raise Unauthorized("Token carries an unknown role") from error

    chapter_id = payload.get("chapter_id")
    return CallerContext(
        user_id=str(payload["sub"]),
        role=role,
        chapter_id=str(chapter_id) if chapter_id else None,
        enrolled_courses=_string_set(payload.get("enrolled_courses")),
        teaching_courses=_string_set(payload.get("teaching_courses")),
    )


def get_admin_caller(
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
) -> CallerContext:
    access.ensure(db, Action.administer, None, caller)
    return caller


def get_blob_store() -> BlobStore:
    return _minio_blob_store()


def get_summary_generator() -> SummaryGenerator:
    return SummaryGenerator()


def get_processing_queue(request: Request) -> ProcessingQueue:
    pool = getattr(request.app.state, "processing_pool", None)
    if pool is None:
        raise Internal("Processing pool is not running")
    return pool
