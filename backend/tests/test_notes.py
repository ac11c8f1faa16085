import pytest

from eoty_library import models
from eoty_library.core.config import settings


@pytest.fixture
def resource_id(headers, ready_resource):
    return ready_resource(headers("teacher-1", "teacher"), title="Romans study")


def post_note(client, auth, resource_id, **payload):
    payload.setdefault("content", "A note")
    return client.post(f"/api/resources/{resource_id}/notes", json=payload, headers=auth)


def test_public_note_shared_with_chapter(client, headers, resource_id):
    author = headers("user-a", chapter_id="ch-1")
    reader = headers("user-b", chapter_id="ch-1")

    def reader_groups():
        return client.get(f"/api/resources/{resource_id}/notes", headers=reader).json()["data"]

    response = post_note(
        client,
        author,
        resource_id,
        content="Grace precedes faith",
        section_anchor="p3",
        section_text="For by grace you have been saved",
        section_position=3.0,
    )
    assert response.status_code == 201
    note = response.json()["data"]
    assert note["section_anchor"] == "p3"
    assert reader_groups() == {"own": [], "public": [], "shared": []}

    client.put(f"/api/notes/{note['id']}", json={"visibility": "public"}, headers=author)
    groups = reader_groups()
    assert [item["id"] for item in groups["public"]] == [note["id"]]
    assert groups["shared"] == []
    assert groups["own"] == []

    share = client.post(f"/api/notes/{note['id']}/share", headers=author)
    assert share.status_code == 200
    assert share.json()["data"]["chapter_id"] == "ch-1"

    groups = reader_groups()
    assert [item["id"] for item in groups["shared"]] == [note["id"]]
    assert groups["public"] == []

    outsider = headers("user-c", chapter_id="ch-2")
    groups = client.get(f"/api/resources/{resource_id}/notes", headers=outsider).json()["data"]
    assert groups["shared"] == []
    assert [item["id"] for item in groups["public"]] == [note["id"]]


def test_revoked_share_returns_note_to_public(client, headers, resource_id):
    author = headers("user-a", chapter_id="ch-1")
    reader = headers("user-b", chapter_id="ch-1")
    note_id = post_note(client, author, resource_id, visibility="public").json()["data"]["id"]
    share_id = client.post(f"/api/notes/{note_id}/share", headers=author).json()["data"]["id"]
    client.delete(f"/api/notes/shares/{share_id}", headers=author)

    groups = client.get(f"/api/resources/{resource_id}/notes", headers=reader).json()["data"]
    assert [item["id"] for item in groups["public"]] == [note_id]
    assert groups["shared"] == []


@pytest.mark.parametrize(
    "section",
    [
        {"section_anchor": "p1"},
        {"section_anchor": "p1", "section_text": "text"},
        {"section_position": 2.0},
    ],
)
def test_section_fields_come_together(client, headers, resource_id, section):
    response = post_note(client, headers("user-a"), resource_id, **section)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "InvalidInput"


def test_notes_ordered_by_position_then_creation(client, headers, resource_id):
    author = headers("user-a")

    def anchored(content, position):
        return post_note(
            client,
            author,
            resource_id,
            content=content,
            section_anchor=f"anchor-{content}",
            section_text=content,
            section_position=position,
        ).json()["data"]["id"]

    first_at_five = anchored("A", 5)
    second_at_five = anchored("B", 5)
    loose = post_note(client, author, resource_id, content="D").json()["data"]["id"]
    at_one = anchored("C", 1)

    own = client.get(f"/api/resources/{resource_id}/notes", headers=author).json()["data"]["own"]
    assert [item["id"] for item in own] == [at_one, first_at_five, second_at_five, loose]


def test_share_is_idempotent(client, headers, resource_id, db):
    author = headers("user-a", chapter_id="ch-1")
    note_id = post_note(client, author, resource_id, visibility="public").json()["data"]["id"]

    first = client.post(f"/api/notes/{note_id}/share", headers=author).json()["data"]
    second = client.post(f"/api/notes/{note_id}/share", headers=author).json()["data"]
    assert first["id"] == second["id"]
    assert db.query(models.NoteShare).count() == 1

    events = (
        db.query(models.UsageEvent)
        .filter(models.UsageEvent.action == models.UsageAction.share_created)
        .count()
    )
    assert events == 1


def test_share_needs_a_chapter(client, headers, resource_id, db):
    author = headers("user-a")
    note_id = post_note(client, author, resource_id, visibility="public").json()["data"]["id"]

    response = client.post(f"/api/notes/{note_id}/share", headers=author)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NoChapter"
    assert db.query(models.NoteShare).count() == 0


def test_revoke_then_share_again_reactivates(client, headers, resource_id, db):
    author = headers("user-a", chapter_id="ch-1")
    reader = headers("user-b", chapter_id="ch-1")
    note_id = post_note(client, author, resource_id, visibility="public").json()["data"]["id"]
    share_id = client.post(f"/api/notes/{note_id}/share", headers=author).json()["data"]["id"]

    assert client.delete(f"/api/notes/shares/{share_id}", headers=reader).status_code == 403

    revoked = client.delete(f"/api/notes/shares/{share_id}", headers=author).json()["data"]
    assert revoked["revoked_at"] is not None
    groups = client.get(f"/api/resources/{resource_id}/notes", headers=reader).json()["data"]
    assert groups["shared"] == []

    again = client.post(f"/api/notes/{note_id}/share", headers=author).json()["data"]
    assert again["id"] == share_id
    assert again["revoked_at"] is None
    assert db.query(models.NoteShare).count() == 1


def test_shares_wait_for_approval_when_configured(client, headers, resource_id, monkeypatch):
    monkeypatch.setattr(settings, "NOTE_SHARE_AUTO_APPROVE", False)
    author = headers("user-a", chapter_id="ch-1")
    reader = headers("user-b", chapter_id="ch-1")
    note_id = post_note(client, author, resource_id, visibility="public").json()["data"]["id"]

    share = client.post(f"/api/notes/{note_id}/share", headers=author).json()["data"]
    assert share["approved"] is False
    groups = client.get(f"/api/resources/{resource_id}/notes", headers=reader).json()["data"]
    assert groups["shared"] == []

    assert client.post(f"/api/notes/shares/{share['id']}/approve", headers=author).status_code == 403
    approved = client.post(f"/api/notes/shares/{share['id']}/approve", headers=headers("admin-1", "admin"))
    assert approved.json()["data"]["approved"] is True

    groups = client.get(f"/api/resources/{resource_id}/notes", headers=reader).json()["data"]
    assert [item["id"] for item in groups["shared"]] == [note_id]


def test_only_author_changes_note(client, headers, resource_id):
    author = headers("user-a")
    other = headers("user-b")
    public_id = post_note(client, author, resource_id, visibility="public").json()["data"]["id"]
    private_id = post_note(client, author, resource_id, content="mine").json()["data"]["id"]

    forbidden = client.put(f"/api/notes/{public_id}", json={"content": "edited"}, headers=other)
    assert forbidden.status_code == 403
    hidden = client.put(f"/api/notes/{private_id}", json={"content": "edited"}, headers=other)
    assert hidden.status_code == 404
    assert client.delete(f"/api/notes/{private_id}", headers=other).status_code == 404

    updated = client.put(
        f"/api/notes/{public_id}",
        json={"content": "  edited  ", "visibility": "private"},
        headers=author,
    ).json()["data"]
    assert updated["content"] == "edited"
    assert updated["visibility"] == "private"

    assert client.delete(f"/api/notes/{private_id}", headers=author).status_code == 200
    own = client.get(f"/api/resources/{resource_id}/notes", headers=author).json()["data"]["own"]
    assert [item["id"] for item in own] == [public_id]


def test_notes_need_a_visible_resource(client, headers, ready_resource):
    resource_id = ready_resource(
        headers("teacher-1", "teacher"),
        scope="chapter_wide",
        companion_id="ch-1",
    )
    response = post_note(client, headers("user-x", chapter_id="ch-2"), resource_id)
    assert response.status_code == 404
