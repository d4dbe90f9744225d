"""users and download_jobs

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=150), nullable=False),
        sa.Column("fcm_token", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "download_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("owner_namespace", sa.String(length=150), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("downloaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("storage_path", sa.String(length=1000), nullable=True),
        sa.Column("download_url", sa.Text(), nullable=True),
        sa.Column("download_url_expiry", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_download_jobs_item_id", "download_jobs", ["item_id"])
    op.create_index("ix_download_jobs_status_retry", "download_jobs", ["status", "retry_count"])


def downgrade() -> None:
    op.drop_index("ix_download_jobs_status_retry", table_name="download_jobs")
    op.drop_index("ix_download_jobs_item_id", table_name="download_jobs")
    op.drop_table("download_jobs")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
