"""
tour reservations core tables

Revision ID: 0001_tour_reservations
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_tour_reservations"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "tours",
        sa.Column("tour_id", sa.String(length=36), primary_key=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.String(length=36), nullable=True),
        sa.Column("guided_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("default_group_size", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("meeting_point", sa.Text(), nullable=True),
        sa.Column("meeting_time", sa.String(length=16), nullable=True),
        sa.Column("addon_prices", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_tours_owner_id", "tours", ["owner_id"])

    op.create_table(
        "travelers",
        sa.Column("traveler_id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="traveler"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("email", name="uq_travelers_email"),
    )

    op.create_table(
        "tour_availability_slots",
        sa.Column("slot_id", sa.String(length=36), primary_key=True),
        sa.Column("tour_id", sa.String(length=36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("max_group_size", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("booked_spots", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("custom_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tour_id", "date", name="uq_tour_availability_slots_tour_date"),
        sa.CheckConstraint(
            "booked_spots >= 0 AND booked_spots <= max_group_size",
            name="ck_tour_availability_slots_booked_within_capacity",
        ),
    )
    op.create_index("ix_tour_availability_slots_tour_id", "tour_availability_slots", ["tour_id"])

    op.create_table(
        "tour_bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("tour_id", sa.String(length=36), nullable=False),
        sa.Column("traveler_id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=36), nullable=False),
        sa.Column("date", sa.Date(), nullable=True),
        sa.Column("group_size", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("meeting_point", sa.Text(), nullable=True),
        sa.Column("meeting_time", sa.String(length=16), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=False),
        sa.Column("additional_services", sa.JSON(), nullable=False),
        sa.Column("base_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("additional_services_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("fulfillment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_verified", sa.Boolean(), nullable=True),
        sa.Column("traveler_notes", sa.Text(), nullable=True),
        sa.Column("owner_notes", sa.Text(), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("request_key", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("checkout_session_id", name="uq_tour_bookings_checkout_session_id"),
        sa.UniqueConstraint("request_key", name="uq_tour_bookings_request_key"),
    )
    op.create_index("ix_tour_bookings_traveler_id", "tour_bookings", ["traveler_id"])
    op.create_index("ix_tour_bookings_payment_intent_id", "tour_bookings", ["payment_intent_id"])
    op.create_index("ix_tour_bookings_tour_date", "tour_bookings", ["tour_id", "date"])
    op.create_index("ix_tour_bookings_owner_status", "tour_bookings", ["owner_id", "fulfillment_status"])

    op.create_table(
        "tour_booking_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("tour_bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_tour_booking_events_booking_id", "tour_booking_events", ["booking_id"])

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("related_id", sa.String(length=36), nullable=True),
        sa.Column("related_type", sa.String(length=40), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_related_id", "notifications", ["related_id"])

    op.create_table(
        "stripe_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("signature_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("outcome", sa.String(length=64), nullable=False),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("booking_id", sa.String(length=36), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_stripe_events_checkout_session_id", "stripe_events", ["checkout_session_id"])
    op.create_index("ix_stripe_events_booking_id", "stripe_events", ["booking_id"])


def downgrade() -> None:
    op.drop_table("stripe_events")
    op.drop_table("notifications")
    op.drop_table("tour_booking_events")
    op.drop_table("tour_bookings")
    op.drop_table("tour_availability_slots")
    op.drop_table("travelers")
    op.drop_table("tours")
