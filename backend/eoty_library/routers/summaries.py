from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from eoty_library import schemas
from eoty_library.core import summarization
from eoty_library.core.access import CallerContext
from eoty_library.deps import get_caller, get_db_write


router = APIRouter(tags=["summaries"])


@router.get("/unvalidated", response_model=schemas.ApiResponse[list[schemas.SummaryOut]])
def list_unvalidated(
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    rows = summarization.list_unvalidated(db, caller)
    return schemas.ok([schemas.SummaryOut.model_validate(row) for row in rows])


@router.post("/{summary_id}/validate", response_model=schemas.ApiResponse[schemas.SummaryOut])
def validate_summary(
    summary_id: int,
    payload: schemas.SummaryValidateRequest,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    summary = summarization.validate(
        db,
        caller,
        summary_id,
        payload.relevance_score,
        notes=payload.validation_notes,
        version=payload.version,
    )
    return schemas.ok(schemas.SummaryOut.model_validate(summary), "Summary validated")


@router.delete("/{summary_id}", response_model=schemas.ApiResponse[None])
def discard_summary(
    summary_id: int,
    db: Session = Depends(get_db_write),
    caller: CallerContext = Depends(get_caller),
):
    summarization.discard_summary(db, caller, summary_id)
    return schemas.ok(message="Summary discarded")
