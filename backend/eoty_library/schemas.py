from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from eoty_library.models import (
    NoteVisibility,
    ProcessingStatus,
    ResourceScope,
    ResourceShareType,
    SummaryType,
    UsageAction,
)


T = TypeVar("T")

SummaryState = Literal["none", "pending", "publishable"]


class ApiError(BaseModel):
    code: str
    details: Any = None


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str | None = None
    error: ApiError | None = None


def ok(data: Any = None, message: str | None = None) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def _clean_tags(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    tags: list[str] = []
    for item in value:
        tag = str(item).strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


class UploadMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=10000)
    category: str | None = Field(default=None, max_length=80)
    tags: list[str] = Field(default_factory=list, max_length=50)
    language: str | None = Field(default=None, max_length=30)
    topic: str | None = Field(default=None, max_length=120)
    author_id: str | None = Field(default=None, max_length=64)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title is required")
        return value.strip()

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value) or []


class ResourceMetadataUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = Field(ge=1)
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=10000)
    category: str | None = Field(default=None, max_length=80)
    tags: list[str] | None = Field(default=None, max_length=50)
    language: str | None = Field(default=None, max_length=30)
    topic: str | None = Field(default=None, max_length=120)
    author_id: str | None = Field(default=None, min_length=1, max_length=64)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return _clean_tags(value)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"version"})


class ResourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    category: str | None
    tags: list[str] = Field(default_factory=list)
    mime_type: str
    file_type: str
    original_filename: str
    size_bytes: int
    language: str | None
    topic: str | None
    author_id: str
    owner_id: str
    scope: ResourceScope
    companion_id: str | None
    status: ProcessingStatus
    processing_error: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class ResourceDetailOut(ResourceOut):
    can_view_inline: bool
    is_unsupported: bool
    unsupported_message: str | None = None
    summary_state: SummaryState


class ResourceListOut(BaseModel):
    items: list[ResourceOut]
    total: int
    offset: int
    limit: int


class FilterOptionsOut(BaseModel):
    tags: list[str]
    types: list[str]
    topics: list[str]
    authors: list[str]
    languages: list[str]
    categories: list[str]


class NoteCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str = Field(min_length=1, max_length=20000)
    visibility: NoteVisibility = NoteVisibility.private
    section_anchor: str | None = Field(default=None, min_length=1, max_length=255)
    section_text: str | None = None
    section_position: float | None = Field(default=None, allow_inf_nan=False)

    @model_validator(mode="after")
    def section_fields_together(self) -> "NoteCreate":
        present = [
            self.section_anchor is not None,
            self.section_text is not None,
            self.section_position is not None,
        ]
        if any(present) and not all(present):
            raise ValueError("section_anchor, section_text and section_position must be given together")
        return self


class NoteUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str | None = Field(default=None, min_length=1, max_length=20000)
    visibility: NoteVisibility | None = None


class NoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_id: int
    author_id: str
    content: str
    visibility: NoteVisibility
    section_anchor: str | None
    section_text: str | None
    section_position: float | None
    created_at: datetime
    updated_at: datetime


class NoteGroupsOut(BaseModel):
    own: list[NoteOut]
    public: list[NoteOut]
    shared: list[NoteOut]


class NoteShareOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    note_id: int
    sharer_id: str
    chapter_id: str
    approved: bool
    revoked_at: datetime | None
    created_at: datetime


class ResourceShareCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chapter_id: str | None = Field(default=None, max_length=64)
    share_type: ResourceShareType = ResourceShareType.view
    message: str | None = Field(default=None, max_length=2000)


class ResourceShareOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_id: int
    sharer_id: str
    chapter_id: str
    share_type: ResourceShareType
    message: str | None
    created_at: datetime


class SummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_id: int
    summary_type: SummaryType
    text: str
    key_points: list[str] = Field(default_factory=list)
    spiritual_insights: list[str] = Field(default_factory=list)
    word_count: int
    truncated: bool
    relevance_score: float
    validated_by: str | None
    validated_at: datetime | None
    validation_notes: str | None
    version: int
    created_at: datetime


class SummaryResultOut(BaseModel):
    summary: SummaryOut
    publishable: bool
    meets_word_limit: bool
    meets_relevance_requirement: bool
    truncated: bool


class SummaryValidateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    relevance_score: float = Field(ge=0.0, le=1.0)
    validation_notes: str | None = Field(default=None, max_length=5000)
    version: int | None = Field(default=None, ge=1)


class CoverageOut(BaseModel):
    audience_size: int
    active_users: int
    resources_with_usage: int
    coverage_ratio: float
    meets_target: bool
    window_days: int


class UsageRowOut(BaseModel):
    resource_id: int | None
    user_id: str
    action: UsageAction
    count: int


class UsageReportOut(BaseModel):
    since: datetime
    until: datetime
    rows: list[UsageRowOut]
    truncated: bool
