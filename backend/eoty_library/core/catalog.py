from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session, selectinload

from eoty_library import models
from eoty_library.core import access, file_types, summarization, telemetry
from eoty_library.core.access import Action, CallerContext
from eoty_library.core.config import settings
from eoty_library.core.errors import Conflict, Forbidden, InvalidInput, LibraryError
from eoty_library.core.ingestion import normalize_tags, validate_scope
from eoty_library.core.retry import call_with_retry
from eoty_library.core.storage import BlobStore


logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "category", "language", "topic", "author_id")


@dataclass(frozen=True)
class SearchFilters:
    search: str | None = None
    tags: tuple[str, ...] = ()
    file_type: str | None = None
    topic: str | None = None
    author: str | None = None
    category: str | None = None
    language: str | None = None
    date_from: date | None = None
    date_to: date | None = None


@dataclass(frozen=True)
class Paging:
    offset: int = 0
    limit: int = field(default_factory=lambda: settings.SEARCH_DEFAULT_LIMIT)

    def validate(self) -> "Paging":
        if self.offset < 0:
            raise InvalidInput("offset must be zero or greater")
        if not 1 <= self.limit <= settings.SEARCH_MAX_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {settings.SEARCH_MAX_LIMIT}")
        return self


@dataclass(frozen=True)
class ResourceView:
    resource: models.Resource
    can_view_inline: bool
    is_unsupported: bool
    unsupported_message: str | None
    summary_state: str


@dataclass(frozen=True)
class FilterOptions:
    tags: list[str]
    types: list[str]
    topics: list[str]
    authors: list[str]
    languages: list[str]
    categories: list[str]


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _has_tag(tag: str):
    link = models.ResourceTagLink
    return exists(
        select(link.id).where(link.resource_id == models.Resource.id, link.tag == tag)
    )


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _apply_filters(query: Query, filters: SearchFilters) -> Query:
    resource = models.Resource
    if filters.search and filters.search.strip():
        pattern = _like_pattern(filters.search.strip())
        link = models.ResourceTagLink
        query = query.filter(
            or_(
                resource.title.ilike(pattern, escape="\\"),
                resource.description.ilike(pattern, escape="\\"),
                resource.topic.ilike(pattern, escape="\\"),
                exists(
                    select(link.id).where(
                        link.resource_id == resource.id,
                        link.tag.ilike(pattern, escape="\\"),
                    )
                ),
            )
        )
    for tag in normalize_tags(filters.tags):
        query = query.filter(_has_tag(tag))
    if filters.file_type:
        query = query.filter(resource.file_type == filters.file_type.strip().lower())
    if filters.topic:
        query = query.filter(resource.topic == filters.topic.strip())
    if filters.author:
        query = query.filter(resource.author_id == filters.author.strip())
    if filters.category:
        query = query.filter(resource.category == filters.category.strip())
    if filters.language:
        query = query.filter(resource.language == filters.language.strip())
    if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
        raise InvalidInput("dateFrom must not be after dateTo")
    if filters.date_from:
        query = query.filter(resource.created_at >= _day_start(filters.date_from))
    if filters.date_to:
        query = query.filter(resource.created_at < _day_start(filters.date_to + timedelta(days=1)))
    return query


def visible_resources(db: Session, viewer: CallerContext) -> Query:
    return (
        db.query(models.Resource)
        .options(selectinload(models.Resource.tag_links))
        .filter(access.visibility_predicate(viewer))
    )


def _page(query: Query, paging: Paging) -> tuple[list[models.Resource], int]:
    paging.validate()
    total = query.order_by(None).count()
    rows = (
        query.order_by(models.Resource.created_at.desc(), models.Resource.id.desc())
        .offset(paging.offset)
        .limit(paging.limit)
        .all()
    )
    return rows, total


def search(
    db: Session,
    viewer: CallerContext,
    filters: SearchFilters,
    paging: Paging | None = None,
) -> tuple[list[models.Resource], int]:
    """Visible resources matching ``filters``, newest first, with the exact total."""
    query = _apply_filters(visible_resources(db, viewer), filters)
    return _page(query, paging or Paging())


def list_by_scope(
    db: Session,
    viewer: CallerContext,
    scope: models.ResourceScope,
    companion_id: str | None,
    paging: Paging | None = None,
) -> tuple[list[models.Resource], int]:
    companion = validate_scope(scope, companion_id)
    query = visible_resources(db, viewer).filter(models.Resource.scope == scope)
    if companion is None:
        query = query.filter(models.Resource.companion_id.is_(None))
    else:
        query = query.filter(models.Resource.companion_id == companion)
    return _page(query, paging or Paging())


def describe(db: Session, resource: models.Resource) -> ResourceView:
    return ResourceView(
        resource=resource,
        can_view_inline=file_types.can_view_inline(resource.file_type),
        is_unsupported=file_types.is_unsupported(resource.file_type),
        unsupported_message=file_types.unsupported_message(resource.file_type),
        summary_state=summarization.summary_state(db, resource.id),
    )


def get_resource(db: Session, viewer: CallerContext, resource_id: int) -> ResourceView:
    resource = access.require_resource(db, resource_id, viewer, Action.view)
    telemetry.record(
        db,
        user_id=viewer.user_id,
        action=models.UsageAction.view,
        resource_id=resource.id,
    )
    db.commit()
    db.refresh(resource)
    return describe(db, resource)


def _distinct_values(db: Session, viewer: CallerContext, column) -> list[str]:
    rows = (
        db.query(column)
        .filter(access.visibility_predicate(viewer), column.is_not(None))
        .distinct()
        .order_by(column.asc())
        .all()
    )
    return [row[0] for row in rows if row[0] not in (None, "")]


def get_filter_options(db: Session, viewer: CallerContext) -> FilterOptions:
    link = models.ResourceTagLink
    tag_rows = (
        db.query(link.tag)
        .join(models.Resource, models.Resource.id == link.resource_id)
        .filter(access.visibility_predicate(viewer))
        .distinct()
        .order_by(link.tag.asc())
        .all()
    )
    resource = models.Resource
    return FilterOptions(
        tags=[row[0] for row in tag_rows],
        types=_distinct_values(db, viewer, resource.file_type),
        topics=_distinct_values(db, viewer, resource.topic),
        authors=_distinct_values(db, viewer, resource.author_id),
        languages=_distinct_values(db, viewer, resource.language),
        categories=_distinct_values(db, viewer, resource.category),
    )


def update_metadata(
    db: Session,
    caller: CallerContext,
    resource_id: int,
    changes: dict[str, Any],
    version: int,
) -> models.Resource:
    resource = access.require_resource(db, resource_id, caller, Action.edit_metadata)

    values: dict[str, Any] = {}
    for name in EDITABLE_FIELDS:
        if name not in changes:
            continue
        value = changes[name]
        if isinstance(value, str):
            value = value.strip() or None
        if name in {"title", "author_id"} and not value:
            raise InvalidInput(f"{name} cannot be empty")
        values[name] = value

    result = db.execute(
        update(models.Resource)
        .where(
            models.Resource.id == resource.id,
            models.Resource.version == version,
        )
        .values(version=models.Resource.version + 1, updated_at=models.utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict(
            "Resource was changed by another request",
            details={"expected_version": version},
        )

    if "tags" in changes:
        db.query(models.ResourceTagLink).filter(
            models.ResourceTagLink.resource_id == resource.id
        ).delete(synchronize_session=False)
        for tag in normalize_tags(changes["tags"]):
            db.add(models.ResourceTagLink(resource_id=resource.id, tag=tag))

    db.commit()
    db.expire_all()
    refreshed = access.load_resource(db, resource.id)
    logger.info("resource metadata updated: id=%s by=%s fields=%s", resource.id, caller.user_id, sorted(changes))
    return refreshed


def _handle_in_use(db: Session, handle: str) -> bool:
    resource = models.Resource
    row = (
        db.query(resource.id)
        .filter(or_(resource.blob_handle == handle, resource.text_handle == handle))
        .first()
    )
    return row is not None


def release_blobs(db: Session, blob_store: BlobStore, handles: set[str]) -> list[str]:
    """Delete blobs no resource references any more. Returns the deleted handles."""
    deleted: list[str] = []
    for handle in sorted(handles):
        if _handle_in_use(db, handle):
            logger.info("blob %s still referenced, keeping it", handle[:12])
            continue
        try:
            blob_store.delete(handle)
            deleted.append(handle)
        except LibraryError:
            # The orphan sweep retries later.
            logger.exception("blob delete failed for %s", handle[:12])
    return deleted


def delete_resource(
    db: Session,
    blob_store: BlobStore,
    caller: CallerContext,
    resource_id: int,
) -> None:
    resource = access.require_resource(db, resource_id, caller, Action.delete)
    handles = {resource.blob_handle}
    if resource.text_handle:
        handles.add(resource.text_handle)

    db.delete(resource)
    db.commit()
    logger.info("resource deleted: id=%s by=%s", resource_id, caller.user_id)
    release_blobs(db, blob_store, handles)


def open_download(
    db: Session,
    blob_store: BlobStore,
    caller: CallerContext,
    resource_id: int,
) -> tuple[models.Resource, bytes]:
    resource = access.require_resource(db, resource_id, caller, Action.download)
    handle = resource.blob_handle
    payload = call_with_retry(
        lambda: blob_store.get(handle),
        max_retries=settings.UPSTREAM_MAX_RETRIES,
        base_seconds=settings.UPSTREAM_RETRY_BASE_SECONDS,
        label=f"blob read resource_id={resource.id}",
    )
    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.download,
        resource_id=resource.id,
        metadata={"size_bytes": len(payload)},
    )
    db.commit()
    db.refresh(resource)
    return resource, payload



def _find_resource_share(db: Session, resource_id: int, chapter_id: str) -> models.ResourceShare | None:
    return (
        db.query(models.ResourceShare)
        .filter(
            models.ResourceShare.resource_id == resource_id,
            models.ResourceShare.chapter_id == chapter_id,
        )
        .first()
    )


def share_resource_with_chapter(
    db: Session,
    caller: CallerContext,
    resource_id: int,
    *,
    chapter_id: str | None = None,
    share_type: models.ResourceShareType = models.ResourceShareType.view,
    message: str | None = None,
) -> models.ResourceShare:
    """Recommend a visible resource to a chapter's members.

    Members share with their own chapter; admins may name any chapter. The
    share does not widen who can see the resource. Sharing the same resource
    with the same chapter again returns the existing share.
    """
    resource = access.require_resource(db, resource_id, caller, Action.view)
    target = (chapter_id or "").strip() or caller.chapter_id
    if target is None:
        access.ensure(db, Action.share_with_chapter, resource, caller)
    if target != caller.chapter_id and not caller.is_admin:
        access.record_denial(db, caller, Action.share_with_chapter, resource.id, "other_chapter")
        raise Forbidden("Resources can only be shared with your own chapter")

    existing = _find_resource_share(db, resource.id, target)
    if existing is not None:
        return existing

    share = models.ResourceShare(
        resource_id=resource.id,
        sharer_id=caller.user_id,
        chapter_id=target,
        share_type=share_type,
        message=(message or "").strip() or None,
    )
    db.add(share)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = _find_resource_share(db, resource_id, target)
        if existing is None:
            raise
        return existing

    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.share_created,
        resource_id=resource.id,
        metadata={"resource_share_id": share.id, "chapter_id": target, "share_type": share_type.value},
    )
    db.commit()
    db.refresh(share)
    logger.info("resource shared: id=%s chapter=%s by=%s", resource.id, target, caller.user_id)
    return share
