from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    "bookingtype": ("individual", "private_group", "public_group"),
    "approvalstatus": ("pending_review", "accepted", "declined", "expired", "cancelled"),
    "fulfillmentstatus": ("scheduled", "completed", "disputed"),
    "paymentstatus": (
        "not_required",
        "awaiting_client_payment",
        "authorized",
        "captured",
        "refunded",
        "failed",
    ),
    "capacitystatus": ("open", "full", "closed"),
    "participantrole": ("organizer", "participant"),
    "participantstatus": (
        "requested",
        "awaiting_payment",
        "awaiting_coach",
        "accepted",
        "declined",
        "cancelled",
        "completed",
    ),
    "participantpaymentstatus": (
        "requires_payment_method",
        "authorized",
        "captured",
        "refunded",
        "cancelled",
    ),
    "bookingpaymentkind": ("authorization", "capture", "cancellation", "refund"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _charged_columns() -> list[sa.Column]:
    return [
        sa.Column("client_charge_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("coach_payout_cents", sa.Integer(), nullable=False),
        sa.Column("processor_fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("payment_status", _enum("paymentstatus"), nullable=False, server_default="not_required"),
        sa.Column("payment_due_at", sa.DateTime(timezone=True)),
        sa.Column("payment_reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("gateway_ref", sa.String(length=128)),
        sa.Column("authorized_at", sa.DateTime(timezone=True)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("refund_amount_cents", sa.Integer()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name in ENUMS:
        postgresql.ENUM(*ENUMS[name], name=name).create(bind, checkfirst=True)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("coach_id", sa.Integer(), nullable=False),
        sa.Column("booking_type", _enum("bookingtype"), nullable=False),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("location_name", sa.String(length=255)),
        sa.Column("location_address", sa.String(length=255)),
        sa.Column("location_notes", sa.Text()),
        sa.Column("client_message", sa.Text()),
        sa.Column("approval_status", _enum("approvalstatus"), nullable=False, server_default="pending_review"),
        sa.Column("fulfillment_status", _enum("fulfillmentstatus"), nullable=False, server_default="scheduled"),
        sa.Column("response_due_at", sa.DateTime(timezone=True)),
        sa.Column("locked_until", sa.DateTime(timezone=True)),
        sa.Column("idempotency_key", sa.String(length=128)),
        sa.Column("coach_responded_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_by", sa.String(length=64)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.String(length=255)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("disputed_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("idempotency_key", name="uq_booking_idempotency_key"),
        sa.CheckConstraint("scheduled_end_at > scheduled_start_at", name="ck_booking_schedule_order"),
    )
    op.create_index("ix_bookings_coach_id", "bookings", ["coach_id"])
    op.create_index("ix_bookings_scheduled_start_at", "bookings", ["scheduled_start_at"])
    op.create_index("ix_bookings_approval_status", "bookings", ["approval_status"])

    op.create_table(
        "individual_booking_details",
        sa.Column(
            "booking_id",
            sa.Integer(),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("client_id", sa.Integer(), nullable=False, index=True),
        *_charged_columns(),
    )

    op.create_table(
        "private_group_booking_details",
        sa.Column(
            "booking_id",
            sa.Integer(),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("organizer_id", sa.Integer(), nullable=False, index=True),
        sa.Column("total_participants", sa.Integer(), nullable=False),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        *_charged_columns(),
        sa.CheckConstraint("total_participants >= 2", name="ck_private_group_min_size"),
    )

    op.create_table(
        "public_group_lesson_details",
        sa.Column(
            "booking_id",
            sa.Integer(),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("max_participants", sa.Integer(), nullable=False),
        sa.Column("min_participants", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("capacity_status", _enum("capacitystatus"), nullable=False, server_default="open"),
        sa.Column("current_participants", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("authorized_participants", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("captured_participants", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("current_participants >= 0", name="ck_public_current_non_negative"),
        sa.CheckConstraint("current_participants <= max_participants", name="ck_public_current_within_max"),
        sa.CheckConstraint("authorized_participants >= 0", name="ck_public_authorized_non_negative"),
        sa.CheckConstraint("captured_participants >= 0", name="ck_public_captured_non_negative"),
        sa.CheckConstraint("min_participants <= max_participants", name="ck_public_min_within_max"),
    )

    op.create_table(
        "booking_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), index=True),
        sa.Column("user_id", sa.Integer(), nullable=False, index=True),
        sa.Column("role", _enum("participantrole"), nullable=False, server_default="participant"),
        sa.Column("status", _enum("participantstatus"), nullable=False, server_default="requested"),
        sa.Column(
            "payment_status",
            _enum("participantpaymentstatus"),
            nullable=False,
            server_default="requires_payment_method",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("gateway_ref", sa.String(length=128)),
        sa.Column("expires_at", sa.DateTime(timezone=True), index=True),
        sa.Column("admitted_at", sa.DateTime(timezone=True)),
        sa.Column("authorized_at", sa.DateTime(timezone=True)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("refund_amount_cents", sa.Integer()),
        sa.Column("joined_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("booking_id", "user_id", name="uq_participant_booking_user"),
    )

    op.create_table(
        "booking_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), index=True),
        sa.Column(
            "participant_id",
            sa.Integer(),
            sa.ForeignKey("booking_participants.id", ondelete="SET NULL"),
        ),
        sa.Column("kind", _enum("bookingpaymentkind"), nullable=False),
        sa.Column("gateway_ref", sa.String(length=128), nullable=False, index=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("capture_method", sa.String(length=16), nullable=False, server_default="manual"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("idempotency_key", sa.String(length=160)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("idempotency_key", name="uq_booking_payment_idempotency_key"),
    )

    op.create_table(
        "booking_state_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), index=True),
        sa.Column(
            "participant_id",
            sa.Integer(),
            sa.ForeignKey("booking_participants.id", ondelete="SET NULL"),
        ),
        sa.Column("field", sa.String(length=32), nullable=False),
        sa.Column("old_value", sa.String(length=32)),
        sa.Column("new_value", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.String(length=64), nullable=False),
        sa.Column("actor_role", sa.String(length=16), nullable=False),
        sa.Column("reason", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "coach_payment_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("coach_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("gateway_account_id", sa.String(length=128), nullable=False),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("coach_payment_accounts")
    op.drop_table("booking_state_transitions")
    op.drop_table("booking_payments")
    op.drop_table("booking_participants")
    op.drop_table("public_group_lesson_details")
    op.drop_table("private_group_booking_details")
    op.drop_table("individual_booking_details")
    op.drop_index("ix_bookings_approval_status", table_name="bookings")
    op.drop_index("ix_bookings_scheduled_start_at", table_name="bookings")
    op.drop_index("ix_bookings_coach_id", table_name="bookings")
    op.drop_table("bookings")
    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
