"""
Create users, user_settings and bookmarks tables with enrichment columns.

Revision ID: 5c1e7a93b2d0
Revises:
Create Date: 2026-10-18 09:14:52.118204
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c1e7a93b2d0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("clock_timestamp()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("clock_timestamp()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "auth0_id",
            sa.String(length=255),
            nullable=False,
            comment="Auth0 'sub' claim - unique identifier from Auth0",
        ),
        sa.Column("email", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_auth0_id"), "users", ["auth0_id"], unique=True)

    op.create_table(
        "user_settings",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "link_check_enabled", sa.Boolean(), server_default=sa.false(), nullable=False,
        ),
        sa.Column(
            "link_check_interval_minutes",
            sa.Integer(),
            nullable=True,
            comment="Minutes between checks of the same bookmark. NULL uses the server default.",
        ),
        sa.Column(
            "link_check_batch_size",
            sa.Integer(),
            nullable=True,
            comment="Max bookmarks of this user checked per pass. NULL uses the server default.",
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "bookmarks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "screenshot_status", sa.String(length=16), server_default="idle", nullable=False,
        ),
        sa.Column("screenshot_url", sa.Text(), nullable=True),
        sa.Column("screenshot_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "link_status", sa.String(length=16), server_default="unknown", nullable=False,
        ),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("last_link_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "link_fail_count",
            sa.Integer(),
            server_default="0",
            nullable=False,
            comment="Consecutive non-ok link checks; reset to 0 on the first ok.",
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "screenshot_status <> 'done' OR screenshot_url IS NOT NULL",
            name="ck_bookmarks_screenshot_done_has_url",
        ),
        sa.CheckConstraint(
            "link_fail_count >= 0", name="ck_bookmarks_link_fail_count_nonnegative",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_bookmarks_user_id"), "bookmarks", ["user_id"], unique=False)
    op.create_index(op.f("ix_bookmarks_deleted_at"), "bookmarks", ["deleted_at"], unique=False)
    op.create_index(
        "ix_bookmarks_link_check_due",
        "bookmarks",
        ["last_link_check_at", "id"],
        unique=False,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index(
        "ix_bookmarks_screenshot_pending",
        "bookmarks",
        ["screenshot_updated_at"],
        unique=False,
        postgresql_where=sa.text("screenshot_status = 'pending'"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_bookmarks_screenshot_pending", table_name="bookmarks")
    op.drop_index("ix_bookmarks_link_check_due", table_name="bookmarks")
    op.drop_index(op.f("ix_bookmarks_deleted_at"), table_name="bookmarks")
    op.drop_index(op.f("ix_bookmarks_user_id"), table_name="bookmarks")
    op.drop_table("bookmarks")
    op.drop_table("user_settings")
    op.drop_index(op.f("ix_users_auth0_id"), table_name="users")
    op.drop_table("users")
