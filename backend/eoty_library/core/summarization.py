from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eoty_library import models
from eoty_library.core import access, telemetry
from eoty_library.core.access import Action, CallerContext
from eoty_library.core.ai_service import GeneratedSummary
from eoty_library.core.config import settings
from eoty_library.core.errors import (
    BelowRelevanceFloor,
    Conflict,
    InvalidInput,
    NotFound,
    ResourceNotReady,
)
from eoty_library.core.retry import call_with_retry
from eoty_library.core.storage import BlobStore


logger = logging.getLogger(__name__)

MAX_KEY_POINTS = 10
MAX_SPIRITUAL_INSIGHTS = 5

# Whitespace after terminal punctuation, allowing up to two closing quotes or
# brackets; the closers stay with the sentence they end.
_TERMINAL = "[.!?…。！？]"
_CLOSER = "[\"'”’)\\]]"
SENTENCE_END = re.compile(
    rf"(?:(?<={_TERMINAL})|(?<={_TERMINAL}{_CLOSER})|(?<={_TERMINAL}{_CLOSER}{_CLOSER}))\s+"
)


class Generator(Protocol):
    def generate(self, text: str, summary_type: models.SummaryType) -> GeneratedSummary: ...


@dataclass(frozen=True)
class SummaryResult:
    summary: models.AISummary
    publishable: bool
    meets_word_limit: bool
    meets_relevance_requirement: bool
    truncated: bool
    generated: bool = False


def word_count(text: str) -> int:
    return len(text.split())


def truncate_brief(text: str, limit: int = models.BRIEF_WORD_LIMIT) -> tuple[str, bool]:
    """Cut ``text`` to at most ``limit`` words at the last sentence boundary.

    When even the first sentence is longer than the limit, the cut falls on the
    word boundary instead. Returns the text and whether it was shortened.
    """
    clean = text.strip()
    if word_count(clean) <= limit:
        return clean, False

    kept: list[str] = []
    used = 0
    for sentence in SENTENCE_END.split(clean):
        words = word_count(sentence)
        if words == 0:
            continue
        if used + words > limit:
            break
        kept.append(sentence.strip())
        used += words

    if kept:
        return " ".join(kept), True
    return " ".join(clean.split()[:limit]), True


def meets_relevance(score: float) -> bool:
    return score >= models.RELEVANCE_FLOOR


def _result(summary: models.AISummary, *, generated: bool = False) -> SummaryResult:
    within_limit = (
        summary.summary_type != models.SummaryType.brief
        or summary.word_count <= models.BRIEF_WORD_LIMIT
    )
    return SummaryResult(
        summary=summary,
        publishable=summary.is_publishable,
        meets_word_limit=within_limit,
        meets_relevance_requirement=meets_relevance(summary.relevance_score),
        truncated=summary.truncated,
        generated=generated,
    )


def latest_publishable(
    db: Session, resource_id: int, summary_type: models.SummaryType
) -> models.AISummary | None:
    return (
        db.query(models.AISummary)
        .filter(
            models.AISummary.resource_id == resource_id,
            models.AISummary.summary_type == summary_type,
            models.AISummary.validated_at.is_not(None),
            models.AISummary.relevance_score >= models.RELEVANCE_FLOOR,
        )
        .order_by(models.AISummary.validated_at.desc(), models.AISummary.id.desc())
        .first()
    )


def pending_summary(
    db: Session, resource_id: int, summary_type: models.SummaryType
) -> models.AISummary | None:
    return (
        db.query(models.AISummary)
        .filter(
            models.AISummary.resource_id == resource_id,
            models.AISummary.summary_type == summary_type,
            models.AISummary.validated_at.is_(None),
        )
        .first()
    )


def summary_state(db: Session, resource_id: int) -> str:
    """Return ``publishable``, ``pending`` or ``none`` for a resource's summaries."""
    publishable = (
        db.query(models.AISummary.id)
        .filter(
            models.AISummary.resource_id == resource_id,
            models.AISummary.validated_at.is_not(None),
            models.AISummary.relevance_score >= models.RELEVANCE_FLOOR,
        )
        .first()
    )
    if publishable is not None:
        return "publishable"
    pending = (
        db.query(models.AISummary.id)
        .filter(
            models.AISummary.resource_id == resource_id,
            models.AISummary.validated_at.is_(None),
        )
        .first()
    )
    return "pending" if pending is not None else "none"


def get_or_generate(
    db: Session,
    blob_store: BlobStore,
    generator: Generator,
    caller: CallerContext,
    resource_id: int,
    summary_type: models.SummaryType,
) -> SummaryResult:
    resource = access.require_resource(db, resource_id, caller, Action.view)

    current = latest_publishable(db, resource.id, summary_type)
    if current is not None:
        return _result(current)
    existing = pending_summary(db, resource.id, summary_type)
    if existing is not None:
        return _result(existing)

    if resource.status != models.ProcessingStatus.ready or not resource.text_handle:
        raise ResourceNotReady("Resource has no extracted text yet")

    text_handle = resource.text_handle
    source = call_with_retry(
        lambda: blob_store.get(text_handle),
        max_retries=settings.UPSTREAM_MAX_RETRIES,
        base_seconds=settings.UPSTREAM_RETRY_BASE_SECONDS,
        label=f"text read resource_id={resource.id}",
    ).decode("utf-8", errors="ignore")

    generated = call_with_retry(
        lambda: generator.generate(source, summary_type),
        max_retries=settings.UPSTREAM_MAX_RETRIES,
        base_seconds=settings.UPSTREAM_RETRY_BASE_SECONDS,
        label=f"summary generation resource_id={resource.id}",
    )

    text = generated.text.strip()
    truncated = False
    if summary_type == models.SummaryType.brief:
        text, truncated = truncate_brief(text)

    summary = models.AISummary(
        resource_id=resource.id,
        summary_type=summary_type,
        text=text,
        key_points=list(generated.key_points)[:MAX_KEY_POINTS],
        spiritual_insights=list(generated.spiritual_insights)[:MAX_SPIRITUAL_INSIGHTS],
        word_count=word_count(text),
        truncated=truncated,
        relevance_score=float(generated.relevance_score),
    )
    db.add(summary)
    try:
        db.flush()
    except IntegrityError:
        # Another request stored the pending summary first.
        db.rollback()
        existing = pending_summary(db, resource.id, summary_type)
        if existing is None:
            raise Conflict("Summary generation raced with another request")
        return _result(existing)

    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.ai_summary_generated,
        resource_id=resource.id,
        metadata={
            "summary_id": summary.id,
            "summary_type": summary_type.value,
            "word_count": summary.word_count,
            "truncated": truncated,
        },
    )
    db.commit()
    db.refresh(summary)
    logger.info(
        "summary stored: resource_id=%s type=%s words=%s truncated=%s relevance=%.4f",
        resource.id,
        summary_type.value,
        summary.word_count,
        truncated,
        summary.relevance_score,
    )
    return _result(summary, generated=True)


def validate(
    db: Session,
    caller: CallerContext,
    summary_id: int,
    score: float,
    notes: str | None = None,
    version: int | None = None,
) -> models.AISummary:
    access.ensure(db, Action.validate_summary, None, caller)
    if not 0.0 <= score <= 1.0:
        raise InvalidInput("Relevance score must be between 0 and 1")
    if not meets_relevance(score):
        raise BelowRelevanceFloor(details={"score": score, "floor": models.RELEVANCE_FLOOR})

    summary = db.get(models.AISummary, summary_id)
    if summary is None:
        raise NotFound("Summary not found")
    expected = summary.version if version is None else version

    result = db.execute(
        update(models.AISummary)
        .where(
            models.AISummary.id == summary_id,
            models.AISummary.version == expected,
        )
        .values(
            relevance_score=score,
            validated_by=caller.user_id,
            validated_at=models.utc_now(),
            validation_notes=notes,
            version=models.AISummary.version + 1,
            updated_at=models.utc_now(),
        )
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Summary was changed by another request", details={"expected_version": expected})
    db.commit()
    db.refresh(summary)
    logger.info("summary validated: id=%s by=%s score=%.4f", summary_id, caller.user_id, score)
    return summary


def list_unvalidated(db: Session, caller: CallerContext) -> list[models.AISummary]:
    access.ensure(db, Action.validate_summary, None, caller)
    return (
        db.query(models.AISummary)
        .filter(models.AISummary.validated_at.is_(None))
        .order_by(models.AISummary.created_at.asc(), models.AISummary.id.asc())
        .all()
    )


def discard_summary(db: Session, caller: CallerContext, summary_id: int) -> None:
    access.ensure(db, Action.validate_summary, None, caller)
    summary = db.get(models.AISummary, summary_id)
    if summary is None:
        raise NotFound("Summary not found")
    if summary.validated_at is not None:
        raise Conflict("Validated summaries cannot be discarded")
    db.delete(summary)
    db.commit()
    logger.info("summary discarded: id=%s by=%s", summary_id, caller.user_id)
