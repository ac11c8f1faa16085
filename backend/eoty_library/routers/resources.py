from datetime import date, datetime, timedelta
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from eoty_library import models, schemas
from eoty_library.core import annotation, catalog, export, ingestion, summarization, telemetry
from eoty_library.core.access import CallerContext
from eoty_library.core.ai_service import SummaryGenerator
from eoty_library.core.config import settings
from eoty_library.core.errors import InvalidInput
from eoty_library.core.ingestion import ProcessingQueue
from eoty_library.core.storage import BlobStore
from eoty_library.deps import (
    get_admin_caller,
    get_blob_store,
    get_caller,
    get_db_read,
    get_db_write,
    get_processing_queue,
    get_summary_generator,
)


router = APIRouter(tags=["resources"])


def validation_details(error: ValidationError) -> list[dict]:
    return [
        {"loc": [str(part) for part in item.get("loc", ())], "msg": item.get("msg", "")}
        for item in error.errors()
    ]


def parse_tag_list(raw_tags: list[str] | None) -> list[str]:
    if not raw_tags:
        return []
    tags: list[str] = []
    for item in raw_tags:
        for part in item.split(","):
            tag = part.strip().lower()
            if tag and tag not in tags:
                tags.append(tag)
    return tags


def content_disposition(filename: str, disposition: str = "attachment") -> str:
    safe_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    encoded = quote(filename, safe="")
    return f"{disposition}; filename=\"{safe_name}\"; filename*=UTF-8''{encoded}"


def to_resource_out(resource: models.Resource) -> schemas.ResourceOut:
    return schemas.ResourceOut.model_validate(resource)


def to_detail_out(view: catalog.ResourceView) -> schemas.ResourceDetailOut:
    base = to_resource_out(view.resource).model_dump()
    return schemas.ResourceDetailOut(
        **base,
        can_view_inline=view.can_view_inline,
        is_unsupported=view.is_unsupported,
        unsupported_message=view.unsupported_message,
        summary_state=view.summary_state,
    )


def to_list_out(rows: list[models.Resource], total: int, paging: catalog.Paging) -> schemas.ResourceListOut:
    return schemas.ResourceListOut(
        items=[to_resource_out(row) for row in rows],
        total=total,
        offset=paging.offset,
        limit=paging.limit,
    )


@router.post(
    "/upload",
    response_model=schemas.ApiResponse[schemas.ResourceOut],
    status_code=status.HTTP_201_CREATED,
)
def upload_resource(
    file: UploadFile = File(...),
    scope: models.ResourceScope = Form(...),
    companion_id: str | None = Form(default=None),
    metadata: str = Form(...),
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
    blob_store: BlobStore = Depends(get_blob_store),
    queue: ProcessingQueue = Depends(get_processing_queue),
):
    try:
        parsed = schemas.UploadMetadata.model_validate_json(metadata)
    except ValidationError as error:
        raise InvalidInput("Invalid upload metadata", details=validation_details(error)) from error

    # One byte past the limit is enough to reject the upload.
    data = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    resource = ingestion.upload(
        db,
        blob_store,
        queue,
        caller,
        data=data,
        filename=file.filename or "upload",
        mime=file.content_type,
        scope=scope,
        companion_id=companion_id,
        fields=ingestion.UploadFields(
            title=parsed.title,
            description=parsed.description,
            category=parsed.category,
            tags=tuple(parsed.tags),
            language=parsed.language,
            topic=parsed.topic,
            author_id=parsed.author_id,
        ),
    )
    return schemas.ok(to_resource_out(resource), "Resource uploaded, processing started")


@router.get("/search", response_model=schemas.ApiResponse[schemas.ResourceListOut])
def search_resources(
    search: str | None = Query(default=None, max_length=200),
    tags: list[str] | None = Query(default=None),
    type: str | None = Query(default=None),
    topic: str | None = Query(default=None),
    author: str | None = Query(default=None),
    category: str | None = Query(default=None),
    language: str | None = Query(default=None),
    date_from: date | None = Query(default=None, alias="dateFrom"),
    date_to: date | None = Query(default=None, alias="dateTo"),
    offset: int = Query(default=0),
    limit: int = Query(default=settings.SEARCH_DEFAULT_LIMIT),
    db: Session = Depends(get_db_read),
    caller: CallerContext = Depends(get_caller),
):
    filters = catalog.SearchFilters(
        search=search,
        tags=tuple(parse_tag_list(tags)),
        file_type=type,
        topic=topic,
        author=author,
        category=category,
        language=language,
        date_from=date_from,
        date_to=date_to,
    )
    paging = catalog.Paging(offset=offset, limit=limit)
    rows, total = catalog.search(db, caller, filters, paging)
    return schemas.ok(to_list_out(rows, total, paging))


@router.get("/filters", response_model=schemas.ApiResponse[schemas.FilterOptionsOut])
def filter_options(
    db: Session = Depends(get_db_read),
    caller: CallerContext = Depends(get_caller),
):
    options = catalog.get_filter_options(db, caller)
    return schemas.ok(schemas.FilterOptionsOut(**options.__dict__))


@router.get("/coverage", response_model=schemas.ApiResponse[schemas.CoverageOut])
def coverage(
    audience_size: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_admin_caller),
):
    audience = audience_size
    if audience is None:
        audience = settings.COVERAGE_AUDIENCE_SIZE
    if audience is None:
        audience = telemetry.distinct_user_count(db)
    snapshot = telemetry.coverage_statistics(db, audience_size=audience)
    return schemas.ok(schemas.CoverageOut(**snapshot.__dict__))


@router.get("/usage", response_model=schemas.ApiResponse[schemas.UsageReportOut])
def usage(
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    action: models.UsageAction | None = Query(default=None),
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_admin_caller),
):
    resolved_until = until or models.utc_now()
    resolved_since = since or resolved_until - timedelta(days=settings.COVERAGE_WINDOW_DAYS)
    if resolved_since > resolved_until:
        raise InvalidInput("since must not be after until")
    rows, truncated = telemetry.usage_report(
        db,
        since=resolved_since,
        until=resolved_until,
        action=action,
    )
    return schemas.ok(
        schemas.UsageReportOut(
            since=resolved_since,
            until=resolved_until,
            rows=[schemas.UsageRowOut(**row.__dict__) for row in rows],
            truncated=truncated,
        )
    )


@router.get("/scope/{scope}", response_model=schemas.ApiResponse[schemas.ResourceListOut])
@router.get("/scope/{scope}/{companion_id}", response_model=schemas.ApiResponse[schemas.ResourceListOut])
def list_by_scope(
    scope: models.ResourceScope,
    companion_id: str | None = None,
    offset: int = Query(default=0),
    limit: int = Query(default=settings.SEARCH_DEFAULT_LIMIT),
    db: Session = Depends(get_db_read),
    caller: CallerContext = Depends(get_caller),
):
    paging = catalog.Paging(offset=offset, limit=limit)
    rows, total = catalog.list_by_scope(db, caller, scope, companion_id, paging)
    return schemas.ok(to_list_out(rows, total, paging))


@router.get("/{resource_id}", response_model=schemas.ApiResponse[schemas.ResourceDetailOut])
def get_resource(
    resource_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    view = catalog.get_resource(db, caller, resource_id)
    return schemas.ok(to_detail_out(view))


@router.patch("/{resource_id}", response_model=schemas.ApiResponse[schemas.ResourceOut])
def update_resource(
    resource_id: int,
    payload: schemas.ResourceMetadataUpdate,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    resource = catalog.update_metadata(db, caller, resource_id, payload.changes(), payload.version)
    return schemas.ok(to_resource_out(resource), "Resource updated")


@router.delete("/{resource_id}", response_model=schemas.ApiResponse[None])
def delete_resource(
    resource_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
    blob_store: BlobStore = Depends(get_blob_store),
):
    catalog.delete_resource(db, blob_store, caller, resource_id)
    return schemas.ok(message="Resource deleted")


@router.get("/{resource_id}/download")
def download_resource(
    resource_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
    blob_store: BlobStore = Depends(get_blob_store),
):
    resource, payload = catalog.open_download(db, blob_store, caller, resource_id)
    return Response(
        content=payload,
        media_type=resource.mime_type or "application/octet-stream",
        headers={
            "Content-Disposition": content_disposition(resource.original_filename),
            "Cache-Control": "private, max-age=60",
        },
    )


@router.post("/{resource_id}/reprocess", response_model=schemas.ApiResponse[schemas.ResourceOut])
def reprocess_resource(
    resource_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
    queue: ProcessingQueue = Depends(get_processing_queue),
):
    resource = ingestion.reprocess(db, queue, caller, resource_id)
    return schemas.ok(to_resource_out(resource), "Resource queued for processing")


@router.post("/{resource_id}/share", response_model=schemas.ApiResponse[schemas.ResourceShareOut])
def share_resource(
    resource_id: int,
    payload: schemas.ResourceShareCreate | None = None,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    payload = payload or schemas.ResourceShareCreate()
    share = catalog.share_resource_with_chapter(
        db,
        caller,
        resource_id,
        chapter_id=payload.chapter_id,
        share_type=payload.share_type,
        message=payload.message,
    )
    return schemas.ok(schemas.ResourceShareOut.model_validate(share), "Resource shared with chapter members")


@router.get("/{resource_id}/export")
def export_resource(
    resource_id: int,
    kind: export.ExportKind = Query(default=export.ExportKind.combined),
    format: export.ExportFormat = Query(default=export.ExportFormat.json),
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    document = export.export_resource(db, caller, resource_id, kind, format)
    return Response(
        content=document.body,
        media_type=document.media_type,
        headers={"Content-Disposition": content_disposition(document.filename)},
    )


@router.post(
    "/{resource_id}/notes",
    response_model=schemas.ApiResponse[schemas.NoteOut],
    status_code=status.HTTP_201_CREATED,
)
def create_note(
    resource_id: int,
    payload: schemas.NoteCreate,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    note = annotation.create_note(
        db,
        caller,
        resource_id,
        annotation.NoteDraft(**payload.model_dump()),
    )
    return schemas.ok(schemas.NoteOut.model_validate(note), "Note created")


@router.get("/{resource_id}/notes", response_model=schemas.ApiResponse[schemas.NoteGroupsOut])
def list_notes(
    resource_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    groups = annotation.list_notes_for_resource(db, caller, resource_id)
    return schemas.ok(
        schemas.NoteGroupsOut(
            own=[schemas.NoteOut.model_validate(note) for note in groups.own],
            public=[schemas.NoteOut.model_validate(note) for note in groups.public],
            shared=[schemas.NoteOut.model_validate(note) for note in groups.shared],
        )
    )


@router.get("/{resource_id}/summary", response_model=schemas.ApiResponse[schemas.SummaryResultOut])
def get_summary(
    resource_id: int,
    type: models.SummaryType = Query(default=models.SummaryType.brief),
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
    blob_store: BlobStore = Depends(get_blob_store),
    generator: SummaryGenerator = Depends(get_summary_generator),
):
    result = summarization.get_or_generate(db, blob_store, generator, caller, resource_id, type)
    return schemas.ok(
        schemas.SummaryResultOut(
            summary=schemas.SummaryOut.model_validate(result.summary),
            publishable=result.publishable,
            meets_word_limit=result.meets_word_limit,
            meets_relevance_requirement=result.meets_relevance_requirement,
            truncated=result.truncated,
        )
    )
