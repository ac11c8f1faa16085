from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from eoty_library import schemas
from eoty_library.core import annotation
from eoty_library.core.access import CallerContext
from eoty_library.deps import get_caller, get_db_write


router = APIRouter(tags=["notes"])


@router.post("/shares/{share_id}/approve", response_model=schemas.ApiResponse[schemas.NoteShareOut])
def approve_share(
    share_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    share = annotation.approve_share(db, caller, share_id)
    return schemas.ok(schemas.NoteShareOut.model_validate(share), "Share approved")


@router.delete("/shares/{share_id}", response_model=schemas.ApiResponse[schemas.NoteShareOut])
def revoke_share(
    share_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    share = annotation.revoke_share(db, caller, share_id)
    return schemas.ok(schemas.NoteShareOut.model_validate(share), "Share revoked")


@router.put("/{note_id}", response_model=schemas.ApiResponse[schemas.NoteOut])
def update_note(
    note_id: int,
    payload: schemas.NoteUpdate,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    note = annotation.update_note(
        db,
        caller,
        note_id,
        content=payload.content,
        visibility=payload.visibility,
    )
    return schemas.ok(schemas.NoteOut.model_validate(note), "Note updated")


@router.delete("/{note_id}", response_model=schemas.ApiResponse[None])
def delete_note(
    note_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    annotation.delete_note(db, caller, note_id)
    return schemas.ok(message="Note deleted")


@router.post("/{note_id}/share", response_model=schemas.ApiResponse[schemas.NoteShareOut])
def share_note(
    note_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    share = annotation.share_note_with_chapter(db, caller, note_id)
    return schemas.ok(schemas.NoteShareOut.model_validate(share), "Note shared with chapter members")
