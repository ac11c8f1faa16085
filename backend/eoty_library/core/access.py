"""Access rules for library resources.

A caller is described by a ``CallerContext`` built once per request by the
authentication layer. The same rules are expressed twice: ``can_view`` for a
loaded row and ``visibility_predicate`` for SQL, so that search narrowing
happens inside the query and paging totals stay exact.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from sqlalchemy import and_, or_, true
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from eoty_library import models
from eoty_library.core import telemetry
from eoty_library.core.errors import Forbidden, NoChapter, NotFound, ResourceNotReady


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallerContext:
    user_id: str
    role: models.UserRole
    chapter_id: str | None = None
    enrolled_courses: frozenset[str] = field(default_factory=frozenset)
    teaching_courses: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == models.UserRole.admin

    @property
    def visible_courses(self) -> frozenset[str]:
        return self.enrolled_courses | self.teaching_courses


class Action(str, enum.Enum):
    view = "view"
    download = "download"
    annotate = "annotate"
    share_with_chapter = "share_with_chapter"
    edit_metadata = "edit_metadata"
    delete = "delete"
    validate_summary = "validate_summary"
    administer = "administer"
    upload = "upload"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None


ALLOW = Decision(True)


def is_owner(caller: CallerContext, resource: models.Resource) -> bool:
    return resource.owner_id == caller.user_id


def can_view(caller: CallerContext, resource: models.Resource) -> bool:
    if caller.is_admin:
        return True
    if resource.status == models.ProcessingStatus.failed:
        return False
    if is_owner(caller, resource):
        return True

    scope = resource.scope
    if scope == models.ResourceScope.platform_wide:
        return True
    if scope == models.ResourceScope.course_specific:
        return resource.companion_id in caller.visible_courses
    if scope == models.ResourceScope.chapter_wide:
        return caller.chapter_id is not None and resource.companion_id == caller.chapter_id
    return False


def visibility_predicate(caller: CallerContext) -> ColumnElement[bool]:
    if caller.is_admin:
        return true()

    resource = models.Resource
    clauses = [
        resource.owner_id == caller.user_id,
        resource.scope == models.ResourceScope.platform_wide,
    ]
    courses = sorted(caller.visible_courses)
    if courses:
        clauses.append(
            and_(
                resource.scope == models.ResourceScope.course_specific,
                resource.companion_id.in_(courses),
            )
        )
    if caller.chapter_id:
        clauses.append(
            and_(
                resource.scope == models.ResourceScope.chapter_wide,
                resource.companion_id == caller.chapter_id,
            )
        )
    return and_(
        resource.status != models.ProcessingStatus.failed,
        or_(*clauses),
    )


def check(action: Action, resource: models.Resource | None, caller: CallerContext) -> Decision:
    if action == Action.upload:
        if caller.role in {models.UserRole.teacher, models.UserRole.admin}:
            return ALLOW
        return Decision(False, "role_not_allowed")
    if action in {Action.validate_summary, Action.administer}:
        return ALLOW if caller.is_admin else Decision(False, "not_admin")

    if resource is None or not can_view(caller, resource):
        return Decision(False, "not_visible")

    if action in {Action.view, Action.annotate}:
        return ALLOW
    if action == Action.download:
        if resource.status != models.ProcessingStatus.ready:
            return Decision(False, "not_ready")
        return ALLOW
    if action == Action.share_with_chapter:
        return ALLOW if caller.chapter_id else Decision(False, "no_chapter")
    if action in {Action.edit_metadata, Action.delete}:
        if caller.is_admin or is_owner(caller, resource):
            return ALLOW
        return Decision(False, "not_owner")
    return Decision(False, "unknown_action")


def record_denial(
    db: Session,
    caller: CallerContext,
    action: Action,
    resource_id: int | None,
    reason: str | None,
) -> None:
    telemetry.record(
        db,
        user_id=caller.user_id,
        action=models.UsageAction.access_denied,
        resource_id=resource_id,
        metadata={"action": action.value, "reason": reason},
    )
    db.commit()
    logger.info(
        "access denied: user=%s action=%s resource=%s reason=%s",
        caller.user_id,
        action.value,
        resource_id,
        reason,
    )


def ensure(
    db: Session,
    action: Action,
    resource: models.Resource | None,
    caller: CallerContext,
) -> None:
    """Raise the matching library error when ``caller`` may not perform ``action``.

    Denials are written to the usage log before raising. A caller that cannot
    see the resource gets ``NotFound`` so the scope is not disclosed.
    """
    decision = check(action, resource, caller)
    if decision.allowed:
        return

    record_denial(db, caller, action, resource.id if resource is not None else None, decision.reason)
    if decision.reason == "not_visible":
        raise NotFound("Resource not found")
    if decision.reason == "not_ready":
        raise ResourceNotReady("Resource is still being processed")
    if decision.reason == "no_chapter":
        raise NoChapter()
    raise Forbidden(f"Not allowed to {action.value.replace('_', ' ')}")


def load_resource(db: Session, resource_id: int) -> models.Resource | None:
    return db.query(models.Resource).filter(models.Resource.id == resource_id).first()


def require_resource(
    db: Session,
    resource_id: int,
    caller: CallerContext,
    action: Action = Action.view,
) -> models.Resource:
    resource = load_resource(db, resource_id)
    if resource is None:
        raise NotFound("Resource not found")
    ensure(db, action, resource, caller)
    return resource
