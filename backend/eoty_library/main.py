import logging
import threading

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eoty_library.core import blob_sweep
from eoty_library.core.config import settings
from eoty_library.core.db_read_write import WriteSessionLocal, write_engine
from eoty_library.core.errors import Internal, InvalidInput, LibraryError
from eoty_library.core.ingestion import ProcessingPool
from eoty_library.core.storage import get_blob_store
from eoty_library.db import Base
from eoty_library.routers import notes, resources, summaries


app = FastAPI(title="EOTY Resource Library", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(resources.router, prefix="/api/resources")
app.include_router(notes.router, prefix="/api/notes")
app.include_router(summaries.router, prefix="/api/summaries")


logger = logging.getLogger(__name__)
_scheduler_stop = threading.Event()
_scheduler_threads: list[threading.Thread] = []


@app.exception_handler(LibraryError)
def library_error_handler(request: Request, error: LibraryError):
    if error.status_code >= 500:
        logger.warning("%s %s failed: %s %s", request.method, request.url.path, error.code, error.message)
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(RequestValidationError)
def validation_error_handler(request: Request, error: RequestValidationError):
    details = [
        {"loc": [str(part) for part in item.get("loc", ())], "msg": item.get("msg", "")}
        for item in error.errors()
    ]
    payload = InvalidInput("Request validation failed", details=details)
    return JSONResponse(status_code=payload.status_code, content=payload.to_payload())


@app.exception_handler(Exception)
def unhandled_error_handler(request: Request, error: Exception):
    logger.exception("%s %s crashed", request.method, request.url.path, exc_info=error)
    payload = Internal()
    return JSONResponse(status_code=payload.status_code, content=payload.to_payload())


def _run_orphan_sweep_once() -> None:
    db = WriteSessionLocal()
    try:
        result = blob_sweep.sweep_orphans(db, get_blob_store())
        if result["deleted_count"] > 0 or result["failed_count"] > 0:
            logger.info(
                "orphan sweep done: scanned=%s orphans=%s deleted=%s failed=%s",
                result["scanned_count"],
                result["orphan_count"],
                result["deleted_count"],
                result["failed_count"],
            )
    except Exception:  # noqa: BLE001
        logger.exception("orphan sweep failed")
    finally:
        db.close()


def _start_scheduler_thread(name: str, interval_seconds: int, task) -> None:
    if interval_seconds <= 0:
        return

    def loop() -> None:
        while not _scheduler_stop.wait(interval_seconds):
            task()

    thread = threading.Thread(target=loop, name=name, daemon=True)
    thread.start()
    _scheduler_threads.append(thread)


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=write_engine)

    pool = ProcessingPool(WriteSessionLocal, get_blob_store())
    app.state.processing_pool = pool
    pool.requeue_pending()

    _scheduler_stop.clear()
    _start_scheduler_thread(
        "orphan-blob-sweep",
        settings.ORPHAN_SWEEP_INTERVAL_SECONDS,
        _run_orphan_sweep_once,
    )


@app.on_event("shutdown")
def shutdown_event():
    _scheduler_stop.set()
    for thread in _scheduler_threads:
        thread.join(timeout=1.0)
    _scheduler_threads.clear()

    pool = getattr(app.state, "processing_pool", None)
    if pool is not None:
        pool.shutdown()
        app.state.processing_pool = None


@app.get("/api/health")
def health():
    return {"status": "ok"}
