import json
from datetime import timedelta

from eoty_library import models
from eoty_library.core import telemetry
from eoty_library.core.config import settings


def add_event(db, user_id, action, resource_id=None, *, days_ago=0):
    db.add(
        models.UsageEvent(
            user_id=user_id,
            resource_id=resource_id,
            action=action,
            event_metadata={},
            created_at=models.utc_now() - timedelta(days=days_ago),
        )
    )


def test_coverage_counts_distinct_recent_viewers(client, headers, ready_resource, db):
    resource_id = ready_resource(headers("teacher-1", "teacher"))
    for index in range(82):
        add_event(db, f"user-{index}", models.UsageAction.view, resource_id)
        add_event(db, f"user-{index}", models.UsageAction.view, resource_id)
    for index in range(10):
        add_event(db, f"old-{index}", models.UsageAction.view, resource_id, days_ago=120)
    db.commit()

    admin = headers("admin-1", "admin")
    response = client.get("/api/resources/coverage", params={"audience_size": 100}, headers=admin)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["active_users"] == 82
    assert data["resources_with_usage"] == 1
    assert data["coverage_ratio"] == 0.82
    assert data["meets_target"] is True
    assert data["window_days"] == settings.COVERAGE_WINDOW_DAYS

    fallback = client.get("/api/resources/coverage", headers=admin).json()["data"]
    assert fallback["audience_size"] == 82 + 10 + 1
    assert fallback["meets_target"] is True


def test_coverage_below_target_and_empty_audience(db):
    for index in range(79):
        add_event(db, f"user-{index}", models.UsageAction.view)
    add_event(db, "user-downloader", models.UsageAction.download)
    db.commit()

    snapshot = telemetry.coverage_statistics(db, audience_size=100)
    assert snapshot.active_users == 79
    assert snapshot.meets_target is False

    empty = telemetry.coverage_statistics(db, audience_size=0)
    assert empty.coverage_ratio == 0.0
    assert empty.meets_target is False


def test_reports_are_admin_only(client, headers, db):
    teacher = headers("teacher-1", "teacher")
    assert client.get("/api/resources/coverage", headers=teacher).status_code == 403
    assert client.get("/api/resources/usage", headers=teacher).status_code == 403
    assert client.get("/api/resources/usage").status_code == 401

    denials = db.query(models.UsageEvent).filter(models.UsageEvent.action == models.UsageAction.access_denied).all()
    assert [(event.user_id, event.event_metadata["reason"]) for event in denials] == [
        ("teacher-1", "not_admin"),
        ("teacher-1", "not_admin"),
    ]


def test_usage_report_groups_and_truncates(client, headers, db, monkeypatch):
    for _ in range(3):
        add_event(db, "user-a", models.UsageAction.download)
    add_event(db, "user-a", models.UsageAction.view)
    add_event(db, "user-b", models.UsageAction.view)
    add_event(db, "user-c", models.UsageAction.view, days_ago=200)
    db.commit()
    admin = headers("admin-1", "admin")

    report = client.get("/api/resources/usage", headers=admin).json()["data"]
    assert report["truncated"] is False
    assert report["rows"][0] == {
        "resource_id": None,
        "user_id": "user-a",
        "action": "download",
        "count": 3,
    }
    assert len(report["rows"]) == 3

    views = client.get("/api/resources/usage", params={"action": "view"}, headers=admin).json()["data"]
    assert sorted(row["user_id"] for row in views["rows"]) == ["user-a", "user-b"]

    monkeypatch.setattr(settings, "USAGE_REPORT_ROW_CAP", 2)
    capped = client.get("/api/resources/usage", headers=admin).json()["data"]
    assert capped["truncated"] is True
    assert len(capped["rows"]) == 2


def test_export_notes_and_summary(client, headers, ready_resource, db):
    owner = headers("teacher-1", "teacher")
    admin = headers("admin-1", "admin")
    resource_id = ready_resource(owner, title="Romans study", topic="Grace")
    client.post(
        f"/api/resources/{resource_id}/notes",
        json={"content": "Chapter five matters", "visibility": "public"},
        headers=owner,
    )
    summary_id = client.get(f"/api/resources/{resource_id}/summary", headers=owner).json()["data"]["summary"]["id"]
    client.post(f"/api/summaries/{summary_id}/validate", json={"relevance_score": 0.99}, headers=admin)

    response = client.get(f"/api/resources/{resource_id}/export", headers=owner)
    assert response.status_code == 200
    assert "Romans-study-combined.json" in response.headers["content-disposition"]
    payload = json.loads(response.content)
    assert payload["resource"]["title"] == "Romans study"
    assert [note["content"] for note in payload["notes"]] == ["Chapter five matters"]
    assert payload["summary"]["id"] == summary_id

    text = client.get(
        f"/api/resources/{resource_id}/export",
        params={"kind": "notes", "format": "txt"},
        headers=headers("reader-1"),
    )
    assert text.status_code == 200
    assert text.headers["content-type"].startswith("text/plain")
    assert "Chapter five matters" in text.text
    assert "Summary" not in text.text

    exports = (
        db.query(models.UsageEvent)
        .filter(models.UsageEvent.action == models.UsageAction.export)
        .count()
    )
    assert exports == 2


def test_export_hides_invisible_resources(client, headers, ready_resource):
    resource_id = ready_resource(headers("teacher-1", "teacher"), scope="owner_private")
    response = client.get(f"/api/resources/{resource_id}/export", headers=headers("reader-1"))
    assert response.status_code == 404
