import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from eoty_library.db import Base


BRIEF_WORD_LIMIT = 250
RELEVANCE_FLOOR = 0.98


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    student = "student"
    teacher = "teacher"
    admin = "admin"


class ResourceScope(str, enum.Enum):
    owner_private = "owner_private"
    course_specific = "course_specific"
    chapter_wide = "chapter_wide"
    platform_wide = "platform_wide"


class ProcessingStatus(str, enum.Enum):
    pending = "pending"
    extracting = "extracting"
    ready = "ready"
    failed = "failed"


class NoteVisibility(str, enum.Enum):
    private = "private"
    public = "public"


class SummaryType(str, enum.Enum):
    brief = "brief"
    detailed = "detailed"


class ResourceShareType(str, enum.Enum):
    view = "view"
    annotate = "annotate"
    export = "export"


class UsageAction(str, enum.Enum):
    view = "view"
    download = "download"
    upload = "upload"
    ai_summary_generated = "ai_summary_generated"
    note_created = "note_created"
    share_created = "share_created"
    access_denied = "access_denied"
    export = "export"


class Resource(Base):
    __tablename__ = "resources"
    __table_args__ = (
        Index("idx_resources_scope_companion", "scope", "companion_id"),
        Index("idx_resources_owner_created", "owner_id", "created_at"),
        CheckConstraint(
            "(scope IN ('course_specific', 'chapter_wide') AND companion_id IS NOT NULL)"
            " OR (scope IN ('owner_private', 'platform_wide') AND companion_id IS NULL)",
            name="ck_resources_scope_companion",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    mime_type: Mapped[str] = mapped_column(String(120), nullable=False)
    file_type: Mapped[str] = mapped_column(String(30), nullable=False, default="other")
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    blob_handle: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    language: Mapped[str | None] = mapped_column(String(30), nullable=True)
    topic: Mapped[str | None] = mapped_column(String(120), nullable=True)
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scope: Mapped[ResourceScope] = mapped_column(
        Enum(ResourceScope, name="resource_scope", create_constraint=True),
        nullable=False,
    )
    companion_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[ProcessingStatus] = mapped_column(
        Enum(ProcessingStatus, name="processing_status", create_constraint=True),
        default=ProcessingStatus.pending,
        nullable=False,
    )
    text_handle: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    tag_links: Mapped[list["ResourceTagLink"]] = relationship(
        back_populates="resource",
        cascade="all, delete-orphan",
        order_by="ResourceTagLink.tag",
    )
    notes: Mapped[list["UserNote"]] = relationship(
        back_populates="resource",
        cascade="all, delete-orphan",
    )
    summaries: Mapped[list["AISummary"]] = relationship(
        back_populates="resource",
        cascade="all, delete-orphan",
    )
    shares: Mapped[list["ResourceShare"]] = relationship(
        back_populates="resource",
        cascade="all, delete-orphan",
    )
    usage_events: Mapped[list["UsageEvent"]] = relationship(
        back_populates="resource",
        cascade="all, delete-orphan",
    )

    @property
    def tags(self) -> list[str]:
        return [link.tag for link in self.tag_links]


class ResourceTagLink(Base):
    __tablename__ = "resource_tags"
    __table_args__ = (
        UniqueConstraint("resource_id", "tag", name="uq_resource_tags_resource_tag"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    resource_id: Mapped[int] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tag: Mapped[str] = mapped_column(String(80), nullable=False, index=True)

    resource: Mapped["Resource"] = relationship(back_populates="tag_links")


class UserNote(Base):
    __tablename__ = "user_notes"
    __table_args__ = (
        Index("idx_user_notes_resource_created", "resource_id", "created_at"),
        CheckConstraint(
            "(section_anchor IS NULL AND section_text IS NULL AND section_position IS NULL)"
            " OR (section_anchor IS NOT NULL AND section_text IS NOT NULL AND section_position IS NOT NULL)",
            name="ck_user_notes_section_triple",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    resource_id: Mapped[int] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    visibility: Mapped[NoteVisibility] = mapped_column(
        Enum(NoteVisibility, name="note_visibility", create_constraint=True),
        default=NoteVisibility.private,
        nullable=False,
    )
    section_anchor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    section_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    section_position: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    resource: Mapped["Resource"] = relationship(back_populates="notes")
    shares: Mapped[list["NoteShare"]] = relationship(
        back_populates="note",
        cascade="all, delete-orphan",
    )


class NoteShare(Base):
    __tablename__ = "note_shares"
    __table_args__ = (
        UniqueConstraint("note_id", "chapter_id", name="uq_note_shares_note_chapter"),
        Index("idx_note_shares_chapter_approved", "chapter_id", "approved"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    note_id: Mapped[int] = mapped_column(
        ForeignKey("user_notes.id", ondelete="CASCADE"), nullable=False
    )
    sharer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    chapter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    note: Mapped["UserNote"] = relationship(back_populates="shares")

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


class ResourceShare(Base):
    __tablename__ = "resource_shares"
    __table_args__ = (
        UniqueConstraint("resource_id", "chapter_id", name="uq_resource_shares_resource_chapter"),
        Index("idx_resource_shares_chapter_created", "chapter_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    resource_id: Mapped[int] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sharer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    chapter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    share_type: Mapped[ResourceShareType] = mapped_column(
        Enum(ResourceShareType, name="resource_share_type", create_constraint=True),
        default=ResourceShareType.view,
        nullable=False,
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    resource: Mapped["Resource"] = relationship(back_populates="shares")


class AISummary(Base):
    __tablename__ = "ai_summaries"
    __table_args__ = (
        Index(
            "uq_ai_summaries_one_unvalidated",
            "resource_id",
            "summary_type",
            unique=True,
            postgresql_where=sql_text("validated_at IS NULL"),
            sqlite_where=sql_text("validated_at IS NULL"),
        ),
        Index("idx_ai_summaries_validated_relevance", "validated_at", "relevance_score"),
        CheckConstraint(
            f"summary_type <> 'brief' OR word_count <= {BRIEF_WORD_LIMIT}",
            name="ck_ai_summaries_brief_word_limit",
        ),
        CheckConstraint(
            f"validated_at IS NULL OR relevance_score >= {RELEVANCE_FLOOR}",
            name="ck_ai_summaries_validated_relevance",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    resource_id: Mapped[int] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    summary_type: Mapped[SummaryType] = mapped_column(
        Enum(SummaryType, name="summary_type", create_constraint=True),
        nullable=False,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    key_points: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    spiritual_insights: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False)
    truncated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    relevance_score: Mapped[float] = mapped_column(Float, nullable=False)
    validated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    validation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    resource: Mapped["Resource"] = relationship(back_populates="summaries")

    @property
    def is_publishable(self) -> bool:
        return self.validated_at is not None and self.relevance_score >= RELEVANCE_FLOOR


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("idx_usage_events_resource_created", "resource_id", "created_at"),
        Index("idx_usage_events_user_created", "user_id", "created_at"),
        Index("idx_usage_events_action_created", "action", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[int | None] = mapped_column(
        ForeignKey("resources.id", ondelete="CASCADE"), nullable=True
    )
    action: Mapped[UsageAction] = mapped_column(
        Enum(UsageAction, name="usage_action", create_constraint=True),
        nullable=False,
    )
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    resource: Mapped["Resource | None"] = relationship(back_populates="usage_events")


class UnsupportedFileAttempt(Base):
    __tablename__ = "unsupported_file_attempts"
    __table_args__ = (
        Index("idx_unsupported_attempts_type_created", "file_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(30), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
