"""Initial rsvpqueue schema."""

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
        "meta",
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("admin_token", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("organizer_name", sa.String(length=120), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column(
            "timezone", sa.String(length=64), nullable=False, server_default="UTC"
        ),
        sa.Column(
            "invite_mode",
            sa.String(length=32),
            nullable=False,
            server_default="priority",
        ),
        sa.Column("spots", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "auto_promote_after_minutes",
            sa.Integer(),
            nullable=False,
            server_default="30",
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.CheckConstraint("spots >= 1", name="ck_events_spots_positive"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("admin_token"),
    )

    op.create_table(
        "invitees",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="pending"
        ),
        sa.Column("invited_at", sa.DateTime(), nullable=True),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "event_id", "priority", name="uq_invitees_event_priority"
        ),
    )
    op.create_index("ix_invitees_email", "invitees", ["email"])
    op.create_index("ix_invitees_phone", "invitees", ["phone"])
    op.create_index("ix_invitees_status", "invitees", ["status"])


def downgrade() -> None:
    op.drop_index("ix_invitees_status", table_name="invitees")
    op.drop_index("ix_invitees_phone", table_name="invitees")
    op.drop_index("ix_invitees_email", table_name="invitees")
    op.drop_table("invitees")
    op.drop_table("events")
    op.drop_table("meta")
