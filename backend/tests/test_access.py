import pytest

from eoty_library import models
from eoty_library.core import access
from eoty_library.core.access import Action, CallerContext
from eoty_library.core.errors import Forbidden, NoChapter, NotFound, ResourceNotReady


def make_resource(scope, companion_id=None, *, owner="owner-1", status=models.ProcessingStatus.ready):
    return models.Resource(
        id=1,
        title="Doc",
        mime_type="application/pdf",
        file_type="pdf",
        original_filename="doc.pdf",
        blob_handle="a" * 64,
        size_bytes=10,
        author_id=owner,
        owner_id=owner,
        scope=scope,
        companion_id=companion_id,
        status=status,
    )


def caller(user_id="user-1", role=models.UserRole.student, **kwargs):
    for name in ("enrolled_courses", "teaching_courses"):
        if name in kwargs:
            kwargs[name] = frozenset(kwargs[name])
    return CallerContext(user_id=user_id, role=role, **kwargs)


def test_owner_private_visible_to_owner_and_admin_only():
    resource = make_resource(models.ResourceScope.owner_private)
    assert access.can_view(caller("owner-1"), resource)
    assert access.can_view(caller("admin-1", models.UserRole.admin), resource)
    assert not access.can_view(caller("user-2"), resource)


def test_course_scope_covers_enrolled_and_teaching():
    resource = make_resource(models.ResourceScope.course_specific, "42")
    assert access.can_view(caller(enrolled_courses={"42"}), resource)
    assert access.can_view(caller(role=models.UserRole.teacher, teaching_courses={"42"}), resource)
    assert not access.can_view(caller(enrolled_courses={"7"}), resource)


def test_chapter_scope_needs_matching_chapter():
    resource = make_resource(models.ResourceScope.chapter_wide, "ch-1")
    assert access.can_view(caller(chapter_id="ch-1"), resource)
    assert not access.can_view(caller(chapter_id="ch-2"), resource)
    assert not access.can_view(caller(), resource)


def test_failed_resources_hidden_from_everyone_but_admins():
    resource = make_resource(
        models.ResourceScope.platform_wide,
        status=models.ProcessingStatus.failed,
    )
    assert not access.can_view(caller("owner-1"), resource)
    assert access.can_view(caller("admin-1", models.UserRole.admin), resource)


@pytest.mark.parametrize(
    "action, who, status, expected",
    [
        (Action.download, caller(), models.ProcessingStatus.pending, "not_ready"),
        (Action.download, caller(), models.ProcessingStatus.ready, None),
        (Action.share_with_chapter, caller(), models.ProcessingStatus.ready, "no_chapter"),
        (Action.share_with_chapter, caller(chapter_id="ch-1"), models.ProcessingStatus.ready, None),
        (Action.edit_metadata, caller(), models.ProcessingStatus.ready, "not_owner"),
        (Action.delete, caller("owner-1"), models.ProcessingStatus.ready, None),
        (Action.validate_summary, caller(), models.ProcessingStatus.ready, "not_admin"),
        (Action.upload, caller(), models.ProcessingStatus.ready, "role_not_allowed"),
        (Action.upload, caller(role=models.UserRole.teacher), models.ProcessingStatus.ready, None),
    ],
)
def test_action_table(action, who, status, expected):
    resource = make_resource(models.ResourceScope.platform_wide, status=status)
    decision = access.check(action, resource, who)
    assert decision.allowed is (expected is None)
    assert decision.reason == expected


@pytest.mark.parametrize(
    "action, resource_kwargs, who, error",
    [
        (Action.view, {"scope": models.ResourceScope.owner_private}, caller("user-2"), NotFound),
        (
            Action.download,
            {"scope": models.ResourceScope.platform_wide, "status": models.ProcessingStatus.extracting},
            caller(),
            ResourceNotReady,
        ),
        (Action.share_with_chapter, {"scope": models.ResourceScope.platform_wide}, caller(), NoChapter),
        (Action.delete, {"scope": models.ResourceScope.platform_wide}, caller("user-2"), Forbidden),
    ],
)
def test_ensure_raises_and_records_denial(db, action, resource_kwargs, who, error):
    resource = make_resource(**resource_kwargs)
    with pytest.raises(error):
        access.ensure(db, action, resource, who)

    event = db.query(models.UsageEvent).one()
    assert event.action == models.UsageAction.access_denied
    assert event.user_id == who.user_id
    assert event.event_metadata["action"] == action.value


def test_visibility_predicate_matches_can_view(db):
    rows = [
        make_resource(models.ResourceScope.owner_private, owner="owner-1"),
        make_resource(models.ResourceScope.owner_private, owner="user-1"),
        make_resource(models.ResourceScope.course_specific, "42"),
        make_resource(models.ResourceScope.course_specific, "7"),
        make_resource(models.ResourceScope.chapter_wide, "ch-1"),
        make_resource(models.ResourceScope.chapter_wide, "ch-2"),
        make_resource(models.ResourceScope.platform_wide),
        make_resource(models.ResourceScope.platform_wide, status=models.ProcessingStatus.failed),
    ]
    for row in rows:
        row.id = None
        db.add(row)
    db.commit()

    viewers = [
        caller(),
        caller(chapter_id="ch-1", enrolled_courses={"42"}),
        caller("admin-1", models.UserRole.admin),
    ]
    for viewer in viewers:
        expected = {row.id for row in rows if access.can_view(viewer, row)}
        found = {
            row.id
            for row in db.query(models.Resource).filter(access.visibility_predicate(viewer)).all()
        }
        assert found == expected
