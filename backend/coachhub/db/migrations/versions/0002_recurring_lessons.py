"""Add recurring lesson templates

Revision ID: 0002_recurring_lessons
Revises: 0001_initial
Create Date: 2030-02-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_recurring_lessons"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recurring_lesson_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("coach_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("weekday", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("max_participants", sa.Integer(), nullable=False),
        sa.Column("min_participants", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        sa.Column("location_name", sa.String(length=255)),
        sa.Column("location_address", sa.String(length=255)),
        sa.Column("location_notes", sa.Text()),
        sa.Column("starts_on", sa.Date(), nullable=False),
        sa.Column("ends_on", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("weekday BETWEEN 0 AND 6", name="ck_recurring_lesson_weekday"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_recurring_lesson_duration_positive"),
        sa.CheckConstraint(
            "min_participants >= 1 AND min_participants <= max_participants",
            name="ck_recurring_lesson_participant_bounds",
        ),
        sa.CheckConstraint("ends_on IS NULL OR ends_on >= starts_on", name="ck_recurring_lesson_date_order"),
    )
    op.create_index(
        "ix_recurring_lesson_templates_coach_id", "recurring_lesson_templates", ["coach_id"]
    )

    op.add_column(
        "bookings",
        sa.Column(
            "recurring_template_id",
            sa.Integer(),
            sa.ForeignKey(
                "recurring_lesson_templates.id",
                name="fk_bookings_recurring_template_id",
                ondelete="SET NULL",
            ),
            nullable=True,
        ),
    )
    op.create_index("ix_bookings_recurring_template_id", "bookings", ["recurring_template_id"])


def downgrade() -> None:
    op.drop_index("ix_bookings_recurring_template_id", table_name="bookings")
    op.drop_constraint("fk_bookings_recurring_template_id", "bookings", type_="foreignkey")
    op.drop_column("bookings", "recurring_template_id")
    op.drop_index("ix_recurring_lesson_templates_coach_id", table_name="recurring_lesson_templates")
    op.drop_table("recurring_lesson_templates")
