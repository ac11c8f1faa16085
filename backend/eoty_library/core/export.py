from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from eoty_library import models
from eoty_library.core import access, annotation, summarization, telemetry
from eoty_library.core.access import Action, CallerContext


class ExportKind(str, enum.Enum):
    notes = "notes"
    summary = "summary"
    combined = "combined"


class ExportFormat(str, enum.Enum):
    json = "json"
    txt = "txt"


MEDIA_TYPES = {
    ExportFormat.json: "application/json",
    ExportFormat.txt: "text/plain; charset=utf-8",
}


@dataclass(frozen=True)
class ExportDocument:
    filename: str
    media_type: str
    body: bytes


def _note_payload(note: models.UserNote) -> dict[str, Any]:
    return {
        "id": note.id,
        "author_id": note.author_id,
        "content": note.content,
        "visibility": note.visibility.value,
        "section_anchor": note.section_anchor,
        "section_text": note.section_text,
        "section_position": note.section_position,
        "created_at": note.created_at.isoformat(),
    }


def _summary_payload(summary: models.AISummary) -> dict[str, Any]:
    return {
        "id": summary.id,
        "summary_type": summary.summary_type.value,
        "text": summary.text,
        "key_points": list(summary.key_points or []),
        "spiritual_insights": list(summary.spiritual_insights or []),
        "relevance_score": summary.relevance_score,
        "validated_at": summary.validated_at.isoformat() if summary.validated_at else None,
    }


def _collect_notes(db: Session, caller: CallerContext, resource_id: int) -> list[models.UserNote]:
    groups = annotation.list_notes_for_resource(db, caller, resource_id)
    return [*groups.own, *groups.public, *groups.shared]


def _render_text(data: dict[str, Any]) -> str:
    resource = data["resource"]
    lines = [resource["title"], "=" * len(resource["title"])]
    for label, key in (("Author", "author_id"), ("Category", "category"), ("Topic", "topic")):
        if resource.get(key):
            lines.append(f"{label}: {resource[key]}")
    if resource.get("description"):
        lines.extend(["", resource["description"]])

    summary = data.get("summary")
    if summary is not None:
        lines.extend(["", f"Summary ({summary['summary_type']})", "-" * 20, summary["text"]])
        if summary["key_points"]:
            lines.extend(["", "Key points:"])
            lines.extend(f"- {item}" for item in summary["key_points"])
        if summary["spiritual_insights"]:
            lines.extend(["", "Spiritual insights:"])
            lines.extend(f"- {item}" for item in summary["spiritual_insights"])

    notes = data.get("notes")
    if notes is not None:
        lines.extend(["", "Notes", "-" * 20])
        if not notes:
            lines.append("(none)")
        for note in notes:
            prefix = f"[{note['section_anchor']}] " if note["section_anchor"] else ""
            lines.append(f"- {prefix}{note['content']}")

    lines.extend(["", f"Exported at {data['exported_at']} by {data['exported_by']}"])
    return "\n".join(lines) + "\n"


def _safe_name(title: str) -> str:
    name = re.sub(r"[^0-9A-Za-z._-]+", "-", title).strip("-")
    return name[:80] or "resource"


def export_resource(
    db: Session,
    caller: CallerContext,
    resource_id: int,
    kind: ExportKind = ExportKind.combined,
    export_format: ExportFormat = ExportFormat.json,
) -> ExportDocument:
    """Bundle a resource's notes and publishable summary for the caller."""
    resource = access.require_resource(db, resource_id, caller, Action.view)

    notes = None
    if kind in {ExportKind.notes, ExportKind.combined}:
        notes = [_note_payload(note) for note in _collect_notes(db, caller, resource.id)]
    summary = None
    if kind in {ExportKind.summary, ExportKind.combined}:
        current = summarization.latest_publishable(db, resource.id, models.SummaryType.brief)
        if current is None:
            current = summarization.latest_publishable(db, resource.id, models.SummaryType.detailed)
        summary = _summary_payload(current) if current is not None else None

    data = {
        "resource": {
            "id": resource.id,
            "title": resource.title,
            "author_id": resource.author_id,
            "category": resource.category,
            "topic": resource.topic,
            "description": resource.description,
        },
        "notes": notes,
        "summary": summary,
        "exported_at": models.utc_now().isoformat(),
        "exported_by": caller.user_id,
    }

    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.export,
        resource_id=resource.id,
        metadata={"kind": kind.value, "format": export_format.value},
    )
    db.commit()

    if export_format == ExportFormat.json:
        body = json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8")
    else:
        body = _render_text(data).encode("utf-8")
    return ExportDocument(
        filename=f"{_safe_name(resource.title)}-{kind.value}.{export_format.value}",
        media_type=MEDIA_TYPES[export_format],
        body=body,
    )
