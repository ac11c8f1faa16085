from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from eoty_library import models
from eoty_library.core import access, telemetry
from eoty_library.core.access import Action, CallerContext
from eoty_library.core.config import settings
from eoty_library.core.errors import Forbidden, InvalidInput, NotFound


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoteDraft:
    content: str
    visibility: models.NoteVisibility = models.NoteVisibility.private
    section_anchor: str | None = None
    section_text: str | None = None
    section_position: float | None = None


@dataclass(frozen=True)
class NoteGroups:
    own: list[models.UserNote]
    public: list[models.UserNote]
    shared: list[models.UserNote]


def check_section_fields(anchor: str | None, text: str | None, position: float | None) -> None:
    present = [value is not None for value in (anchor, text, position)]
    if any(present) and not all(present):
        raise InvalidInput(
            "section_anchor, section_text and section_position must be given together",
            details={"fields": ["section_anchor", "section_text", "section_position"]},
        )
    if position is not None and not math.isfinite(position):
        raise InvalidInput("section_position must be a finite number")


def _ordered(query: Query) -> list[models.UserNote]:
    note = models.UserNote
    return query.order_by(
        note.section_position.is_(None).asc(),
        note.section_position.asc(),
        note.created_at.asc(),
        note.id.asc(),
    ).all()


def create_note(
    db: Session,
    caller: CallerContext,
    resource_id: int,
    draft: NoteDraft,
) -> models.UserNote:
    resource = access.require_resource(db, resource_id, caller, Action.annotate)
    content = (draft.content or "").strip()
    if not content:
        raise InvalidInput("Note content is required")
    check_section_fields(draft.section_anchor, draft.section_text, draft.section_position)

    note = models.UserNote(
        resource_id=resource.id,
        author_id=caller.user_id,
        content=content,
        visibility=draft.visibility,
        section_anchor=draft.section_anchor,
        section_text=draft.section_text,
        section_position=draft.section_position,
    )
    db.add(note)
    db.flush()
    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.note_created,
        resource_id=resource.id,
        metadata={"note_id": note.id, "anchored": draft.section_anchor is not None},
    )
    db.commit()
    db.refresh(note)
    return note


def list_notes_for_resource(db: Session, viewer: CallerContext, resource_id: int) -> NoteGroups:
    """Group the notes on a resource for ``viewer``; each note lands in one group.

    ``own`` holds the viewer's notes. Other authors' public notes go to
    ``shared`` while an approved, unrevoked share to the viewer's chapter
    exists, and to ``public`` otherwise.
    """
    resource = access.require_resource(db, resource_id, viewer, Action.view)
    note = models.UserNote
    base = db.query(note).filter(note.resource_id == resource.id)

    own = _ordered(base.filter(note.author_id == viewer.user_id))
    others_public = base.filter(
        note.author_id != viewer.user_id,
        note.visibility == models.NoteVisibility.public,
    )

    shared: list[models.UserNote] = []
    if viewer.chapter_id:
        share = models.NoteShare
        shared_ids = select(share.note_id).where(
            share.chapter_id == viewer.chapter_id,
            share.approved.is_(True),
            share.revoked_at.is_(None),
        )
        shared = _ordered(others_public.filter(note.id.in_(shared_ids)))
        others_public = others_public.filter(note.id.not_in(shared_ids))
    return NoteGroups(own=own, public=_ordered(others_public), shared=shared)


def _load_note(db: Session, caller: CallerContext, note_id: int, action: Action) -> models.UserNote:
    note = db.get(models.UserNote, note_id)
    if note is None or note.resource is None:
        raise NotFound("Note not found")
    access.ensure(db, Action.view, note.resource, caller)

    is_author = note.author_id == caller.user_id
    if not is_author and not caller.is_admin and note.visibility != models.NoteVisibility.public:
        access.record_denial(db, caller, action, note.resource_id, "note_not_visible")
        raise NotFound("Note not found")
    return note


def _require_author(db: Session, caller: CallerContext, note: models.UserNote, action: Action) -> None:
    if note.author_id == caller.user_id or caller.is_admin:
        return
    access.record_denial(db, caller, action, note.resource_id, "not_author")
    raise Forbidden("Only the author can change this note")


def update_note(
    db: Session,
    caller: CallerContext,
    note_id: int,
    *,
    content: str | None = None,
    visibility: models.NoteVisibility | None = None,
) -> models.UserNote:
    note = _load_note(db, caller, note_id, Action.annotate)
    _require_author(db, caller, note, Action.annotate)

    if content is not None:
        cleaned = content.strip()
        if not cleaned:
            raise InvalidInput("Note content is required")
        note.content = cleaned
    if visibility is not None:
        note.visibility = visibility
    db.commit()
    db.refresh(note)
    return note


def delete_note(db: Session, caller: CallerContext, note_id: int) -> None:
    note = _load_note(db, caller, note_id, Action.annotate)
    _require_author(db, caller, note, Action.annotate)
    db.delete(note)
    db.commit()
    logger.info("note deleted: id=%s by=%s", note_id, caller.user_id)


def _find_share(db: Session, note_id: int, chapter_id: str) -> models.NoteShare | None:
    return (
        db.query(models.NoteShare)
        .filter(
            models.NoteShare.note_id == note_id,
            models.NoteShare.chapter_id == chapter_id,
        )
        .first()
    )


def share_note_with_chapter(db: Session, caller: CallerContext, note_id: int) -> models.NoteShare:
    """Share a note with the caller's chapter.

    Repeating the call returns the existing share, and a revoked share is
    reactivated, so a (note, chapter) pair has at most one active share.
    """
    note = _load_note(db, caller, note_id, Action.share_with_chapter)
    access.ensure(db, Action.share_with_chapter, note.resource, caller)
    chapter_id = caller.chapter_id

    share = _find_share(db, note.id, chapter_id)
    if share is not None and share.is_active:
        return share

    if share is not None:
        share.revoked_at = None
        share.sharer_id = caller.user_id
        share.approved = settings.NOTE_SHARE_AUTO_APPROVE
    else:
        share = models.NoteShare(
            note_id=note.id,
            sharer_id=caller.user_id,
            chapter_id=chapter_id,
            approved=settings.NOTE_SHARE_AUTO_APPROVE,
        )
        db.add(share)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = _find_share(db, note_id, chapter_id)
        if existing is None:
            raise
        return existing

    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.share_created,
        resource_id=note.resource_id,
        metadata={"note_id": note.id, "share_id": share.id, "chapter_id": chapter_id},
    )
    db.commit()
    db.refresh(share)
    logger.info("note shared: note_id=%s chapter=%s by=%s", note.id, chapter_id, caller.user_id)
    return share


def approve_share(db: Session, caller: CallerContext, share_id: int) -> models.NoteShare:
    access.ensure(db, Action.administer, None, caller)
    share = db.get(models.NoteShare, share_id)
    if share is None:
        raise NotFound("Share not found")
    if not share.approved:
        share.approved = True
        db.commit()
        db.refresh(share)
    return share


def revoke_share(db: Session, caller: CallerContext, share_id: int) -> models.NoteShare:
    share = db.get(models.NoteShare, share_id)
    if share is None:
        raise NotFound("Share not found")
    allowed = caller.is_admin or caller.user_id in {share.sharer_id, share.note.author_id}
    if not allowed:
        access.record_denial(db, caller, Action.share_with_chapter, share.note.resource_id, "not_sharer")
        raise Forbidden("Only the sharer, the note author or an admin can revoke a share")
    if share.revoked_at is None:
        share.revoked_at = models.utc_now()
        db.commit()
        db.refresh(share)
    return share
