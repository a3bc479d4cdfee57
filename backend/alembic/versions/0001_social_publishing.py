"""social connections and publish jobs

Revision ID: 0001_social_publishing
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_social_publishing"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "social_connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("platform_user_id", sa.String(length=255), nullable=False),
        sa.Column("platform_username", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.String(length=4096), nullable=False),
        sa.Column("refresh_token", sa.String(length=4096), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scope", sa.String(length=512), nullable=True),
        sa.Column("auto_post_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "platform", name="uq_social_connections_user_platform"),
        sa.CheckConstraint("platform IN ('tiktok', 'instagram')", name="ck_social_connections_platform_values"),
    )
    op.create_index("ix_social_connections_user_id", "social_connections", ["user_id"], unique=False)

    op.create_table(
        "publish_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("connection_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("video_url", sa.Text(), nullable=False),
        sa.Column("caption", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("state", sa.String(length=32), nullable=False, server_default=sa.text("'created'")),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("published_id", sa.String(length=255), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "error_details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("poll_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "state IN ('created', 'container_pending', 'container_ready', 'publishing', 'published', 'failed')",
            name="ck_publish_jobs_state_values",
        ),
    )
    op.create_index("ix_publish_jobs_connection_id", "publish_jobs", ["connection_id"], unique=False)
    op.create_index("ix_publish_jobs_user_id", "publish_jobs", ["user_id"], unique=False)
    op.create_index("ix_publish_jobs_external_id", "publish_jobs", ["external_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_publish_jobs_external_id", table_name="publish_jobs")
    op.drop_index("ix_publish_jobs_user_id", table_name="publish_jobs")
    op.drop_index("ix_publish_jobs_connection_id", table_name="publish_jobs")
    op.drop_table("publish_jobs")
    op.drop_index("ix_social_connections_user_id", table_name="social_connections")
    op.drop_table("social_connections")
