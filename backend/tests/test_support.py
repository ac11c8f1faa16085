import threading
from datetime import timedelta

import pytest

from eoty_library import models
from eoty_library.core import blob_sweep, file_types
from eoty_library.core.errors import InvalidInput, StorageFailure, UpstreamFailure, UpstreamTimeout
from eoty_library.core.retry import backoff_delay, call_with_retry, run_with_deadline
from eoty_library.core.storage import build_object_key, content_hash, handle_from_key


def test_call_with_retry_recovers_from_retryable_errors():
    calls = []
    delays = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StorageFailure("blip")
        return "done"

    result = call_with_retry(flaky, max_retries=2, base_seconds=0.1, label="flaky", sleep=delays.append)
    assert result == "done"
    assert len(calls) == 3
    assert len(delays) == 2


def test_call_with_retry_stops_on_non_retryable_errors():
    calls = []

    def broken():
        calls.append(1)
        raise InvalidInput("bad")

    with pytest.raises(InvalidInput):
        call_with_retry(broken, max_retries=5, base_seconds=0.1, label="broken", sleep=lambda _: None)
    assert len(calls) == 1


def test_call_with_retry_gives_up_after_max_retries():
    calls = []

    def down():
        calls.append(1)
        raise UpstreamFailure("down")

    with pytest.raises(UpstreamFailure):
        call_with_retry(down, max_retries=2, base_seconds=0.1, label="down", sleep=lambda _: None)
    assert len(calls) == 3


def test_backoff_delay_doubles_without_jitter():
    assert [backoff_delay(attempt, 0.5, jitter=False) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]
    assert 0.5 <= backoff_delay(2, 0.5) <= 1.0


def test_object_keys_are_sharded_by_handle():
    handle = content_hash(b"payload")
    key = build_object_key(handle.upper(), prefix="/blobs/")
    assert key == f"blobs/{handle[:2]}/{handle}"
    assert handle_from_key(key) == handle
    assert handle_from_key("blobs/readme.txt") is None
    with pytest.raises(ValueError):
        build_object_key("../../etc/passwd")


@pytest.mark.parametrize(
    "filename, mime, expected",
    [
        ("intro.pdf", "application/pdf", "pdf"),
        ("notes.txt", "text/plain; charset=utf-8", "text"),
        ("deck.pptx", "application/octet-stream", "pptx"),
        ("clip.mp4", "video/mp4", "video"),
        ("README", "application/octet-stream", "other"),
    ],
)
def test_detect_file_type(filename, mime, expected):
    assert file_types.detect_file_type(filename, mime) == expected


def test_view_modes():
    assert file_types.can_view_inline("pdf")
    assert not file_types.can_view_inline("docx")
    assert not file_types.is_unsupported("docx")
    assert file_types.is_unsupported("other")
    assert "download" in file_types.unsupported_message("other")
    assert file_types.unsupported_message("pdf") is None


def test_orphan_sweep_respects_references_and_grace(db, blob_store):
    now = models.utc_now()
    referenced = content_hash(b"kept")
    orphan = content_hash(b"orphan")
    fresh = content_hash(b"fresh")
    for handle in (referenced, orphan, fresh):
        blob_store.put(handle, b"x")
    old = now - timedelta(hours=3)
    for handle in (referenced, orphan):
        payload, content_type, _ = blob_store.objects[handle]
        blob_store.objects[handle] = (payload, content_type, old)

    db.add(
        models.Resource(
            title="Kept",
            mime_type="text/plain",
            file_type="text",
            original_filename="kept.txt",
            blob_handle=referenced,
            size_bytes=4,
            author_id="teacher-1",
            owner_id="teacher-1",
            scope=models.ResourceScope.platform_wide,
        )
    )
    db.commit()

    preview = blob_sweep.sweep_orphans(db, blob_store, grace_seconds=3600, now=now, dry_run=True)
    assert preview == {"scanned_count": 2, "orphan_count": 1, "deleted_count": 0, "failed_count": 0}
    assert blob_store.exists(orphan)

    result = blob_sweep.sweep_orphans(db, blob_store, grace_seconds=3600, now=now)
    assert result["deleted_count"] == 1
    assert blob_store.deleted == [orphan]
    assert blob_store.exists(referenced)
    assert blob_store.exists(fresh)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_hung_calls_do_not_starve_later_deadlines():
    release = threading.Event()

    def hang():
        release.wait(5)
        return "late"

    try:
        for _ in range(6):
            with pytest.raises(UpstreamTimeout):
                run_with_deadline(hang, 0.05, label="hung extraction")
        assert run_with_deadline(lambda: "quick", 1.0, label="quick extraction") == "quick"
    finally:
        release.set()


def test_run_with_deadline_reraises_errors():
    def broken():
        raise ValueError("corrupt")

    with pytest.raises(ValueError, match="corrupt"):
        run_with_deadline(broken, 1.0, label="broken extraction")
    with pytest.raises(UpstreamTimeout):
        run_with_deadline(lambda: "never", 0, label="expired")
