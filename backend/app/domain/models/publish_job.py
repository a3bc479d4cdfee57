import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base


class PublishJobState(StrEnum):
    CREATED = "created"
    CONTAINER_PENDING = "container_pending"
    CONTAINER_READY = "container_ready"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


TERMINAL_STATES = frozenset({PublishJobState.PUBLISHED, PublishJobState.FAILED})

ALLOWED_TRANSITIONS: dict[PublishJobState, frozenset[PublishJobState]] = {
    PublishJobState.CREATED: frozenset(
        {PublishJobState.CONTAINER_PENDING, PublishJobState.PUBLISHING, PublishJobState.FAILED}
    ),
    PublishJobState.CONTAINER_PENDING: frozenset({PublishJobState.CONTAINER_READY, PublishJobState.FAILED}),
    PublishJobState.CONTAINER_READY: frozenset({PublishJobState.PUBLISHING, PublishJobState.FAILED}),
    PublishJobState.PUBLISHING: frozenset({PublishJobState.PUBLISHED, PublishJobState.FAILED}),
    PublishJobState.PUBLISHED: frozenset(),
    PublishJobState.FAILED: frozenset(),
}


class PublishJob(Base):
    __tablename__ = "publish_jobs"
    __table_args__ = (
        CheckConstraint(
            "state IN ('created', 'container_pending', 'container_ready', 'publishing', 'published', 'failed')",
            name="ck_publish_jobs_state_values",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    video_url: Mapped[str] = mapped_column(Text, nullable=False)
    caption: Mapped[str] = mapped_column(Text, nullable=False, default="")
    state: Mapped[str] = mapped_column(String(32), nullable=False, default=PublishJobState.CREATED.value)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    published_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict
    )
    poll_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
