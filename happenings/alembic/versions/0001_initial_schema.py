"""Initial Happenings schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "happenings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("start_time", sa.String(length=5), nullable=True),
        sa.Column("event_date", sa.String(length=10), nullable=True),
        sa.Column("day_of_week", sa.String(length=16), nullable=True),
        sa.Column("recurrence_rule", sa.String(length=64), nullable=True),
        sa.Column("custom_dates", sa.JSON(), nullable=True),
        sa.Column("recurrence_end_date", sa.String(length=10), nullable=True),
        sa.Column("max_occurrences", sa.Integer(), nullable=True),
        sa.Column(
            "is_published", sa.Boolean(), nullable=False, server_default=sa.text("1")
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "occurrence_overrides",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("happening_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="cancelled"
        ),
        sa.Column("override_start_time", sa.String(length=5), nullable=True),
        sa.Column("override_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["happening_id"],
            ["happenings.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("happening_id", "date_key", name="uq_override_date"),
    )
    op.create_index(
        "ix_occurrence_overrides_date_key", "occurrence_overrides", ["date_key"]
    )


def downgrade() -> None:
    op.drop_index("ix_occurrence_overrides_date_key", table_name="occurrence_overrides")
    op.drop_table("occurrence_overrides")
    op.drop_table("happenings")
