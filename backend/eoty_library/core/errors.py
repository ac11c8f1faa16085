from __future__ import annotations

from typing import Any


class LibraryError(Exception):
    code = "Internal"
    status_code = 500
    retryable = False
    default_message = "Internal error"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: Any = None,
        retryable: bool | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code}
        if self.details is not None:
            error["details"] = self.details
        return {"success": False, "message": self.message, "error": error}


class InvalidInput(LibraryError):
    code = "InvalidInput"
    status_code = 400
    default_message = "Invalid input"


class InvalidScope(LibraryError):
    code = "InvalidScope"
    status_code = 400
    default_message = "Scope and companion id do not match"


class NoChapter(LibraryError):
    code = "NoChapter"
    status_code = 400
    default_message = "User must belong to a chapter to share with it"


class BelowRelevanceFloor(LibraryError):
    code = "BelowRelevanceFloor"
    status_code = 400
    default_message = "Relevance score must be at least 0.98"


class Unauthorized(LibraryError):
    code = "Unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(LibraryError):
    code = "Forbidden"
    status_code = 403
    default_message = "Access denied"


class NotFound(LibraryError):
    code = "NotFound"
    status_code = 404
    default_message = "Not found"


class Conflict(LibraryError):
    code = "Conflict"
    status_code = 409
    default_message = "Conflicting update"


class ResourceNotReady(LibraryError):
    code = "ResourceNotReady"
    status_code = 409
    default_message = "Resource is not ready"


class TooLarge(LibraryError):
    code = "TooLarge"
    status_code = 413
    default_message = "File exceeds the upload size limit"


class UnsupportedType(LibraryError):
    code = "UnsupportedType"
    status_code = 415
    default_message = "File type is not supported"


class UpstreamFailure(LibraryError):
    code = "UpstreamFailure"
    status_code = 502
    retryable = True
    default_message = "Upstream service failed"


class UpstreamTimeout(LibraryError):
    code = "UpstreamTimeout"
    status_code = 504
    retryable = True
    default_message = "Upstream service timed out"


class StorageFailure(LibraryError):
    code = "StorageFailure"
    status_code = 500
    retryable = True
    default_message = "Storage operation failed"


class Internal(LibraryError):
    pass
