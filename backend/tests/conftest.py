import json
import os
import tempfile
from io import BytesIO

_DB_DIR = tempfile.mkdtemp(prefix="eoty-library-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/library.db"
os.environ.pop("DATABASE_WRITE_URL", None)
os.environ.pop("DATABASE_READ_URL", None)
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ.pop("COVERAGE_AUDIENCE_SIZE", None)

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter

from eoty_library import models
from eoty_library.core import ingestion
from eoty_library.core.ai_service import GeneratedSummary
from eoty_library.core.db_read_write import WriteSessionLocal, write_engine
from eoty_library.core.errors import NotFound
from eoty_library.core.security import create_access_token
from eoty_library.db import Base
from eoty_library.deps import get_blob_store, get_processing_queue, get_summary_generator
from eoty_library.main import app


class InMemoryBlobStore:
    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.put_calls = 0

    def put(self, handle, payload, content_type="application/octet-stream"):
        self.put_calls += 1
        self.objects[handle] = (payload, content_type, models.utc_now())

    def get(self, handle):
        if handle not in self.objects:
            raise NotFound("Blob not found")
        return self.objects[handle][0]

    def delete(self, handle):
        self.objects.pop(handle, None)
        self.deleted.append(handle)

    def exists(self, handle):
        return handle in self.objects

    def list_handles(self):
        return [(handle, value[2]) for handle, value in self.objects.items()]


class RecordingQueue:
    def __init__(self):
        self.ids = []

    def enqueue(self, resource_id):
        self.ids.append(resource_id)
        return True

    def drain(self, blob_store):
        results = {}
        while self.ids:
            resource_id = self.ids.pop(0)
            results[resource_id] = ingestion.process_resource(
                WriteSessionLocal,
                blob_store,
                resource_id,
                sleep=lambda _: None,
            )
        return results


class FakeGenerator:
    def __init__(self):
        self.calls = 0
        self.error = None
        self.result = GeneratedSummary(
            text="Grace is the theme of this lesson.",
            key_points=["Grace is unearned"],
            spiritual_insights=["God initiates"],
            relevance_score=0.99,
        )

    def generate(self, text, summary_type):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=write_engine)
    Base.metadata.create_all(bind=write_engine)
    yield


@pytest.fixture
def db():
    session = WriteSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def client(blob_store, queue, generator):
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_processing_queue] = lambda: queue
    app.dependency_overrides[get_summary_generator] = lambda: generator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def _headers(user_id, role="student", *, chapter_id=None, enrolled=(), teaching=()):
        token = create_access_token(
            user_id,
            role,
            chapter_id=chapter_id,
            enrolled_courses=list(enrolled),
            teaching_courses=list(teaching),
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def upload_file(client):
    def _upload(
        auth,
        *,
        filename="notes.txt",
        content=b"In the beginning was the Word.",
        mime="text/plain",
        scope="platform_wide",
        companion_id=None,
        **metadata,
    ):
        meta = {"title": metadata.pop("title", filename), **metadata}
        data = {"scope": scope, "metadata": json.dumps(meta)}
        if companion_id is not None:
            data["companion_id"] = companion_id
        return client.post(
            "/api/resources/upload",
            headers=auth,
            data=data,
            files={"file": (filename, content, mime)},
        )

    return _upload


@pytest.fixture
def ready_resource(upload_file, queue, blob_store):
    def _ready(auth, **kwargs):
        response = upload_file(auth, **kwargs)
        assert response.status_code == 201, response.text
        resource_id = response.json()["data"]["id"]
        queue.drain(blob_store)
        return resource_id

    return _ready


@pytest.fixture
def pdf_bytes():
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()
