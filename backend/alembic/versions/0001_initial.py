"""initial bookings schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-01-01 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("completed_bookings_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(updated=False),
    )

    op.create_table(
        "services",
        sa.Column("service_id", sa.String(length=36), primary_key=True),
        sa.Column("provider_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("pricing_type", sa.String(length=16), nullable=False),
        sa.Column("base_price", sa.Integer(), nullable=False),
        sa.Column("packages", sa.JSON(), nullable=False),
        sa.Column("advance_percentage", sa.Integer(), nullable=False),
        sa.Column("travel_fee", sa.Integer(), nullable=False),
        sa.Column("weekend_premium", sa.Integer(), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False),
        sa.Column("weekly_schedule", sa.JSON(), nullable=False),
        sa.Column("unavailable_dates", sa.JSON(), nullable=False),
        sa.Column("max_bookings_per_day", sa.Integer(), nullable=False),
        sa.Column("advance_booking_limit", sa.Integer(), nullable=False),
        sa.Column("cancellation_policy", sa.String(length=500)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_paused", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_services_provider_id", "services", ["provider_id"])

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("service_id", sa.String(length=36), sa.ForeignKey("services.service_id"), nullable=False),
        sa.Column("provider_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("customer_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(length=5), nullable=False),
        sa.Column("end_time", sa.String(length=5), nullable=False),
        sa.Column("duration", sa.Float(), nullable=False),
        sa.Column("service_type", sa.String(length=16), nullable=False),
        sa.Column("pricing_type", sa.String(length=16), nullable=False),
        sa.Column("selected_package", sa.JSON()),
        sa.Column("address", sa.String(length=500)),
        sa.Column("notes", sa.String(length=1000)),
        sa.Column("base_amount", sa.Integer(), nullable=False),
        sa.Column("travel_fee", sa.Integer(), nullable=False),
        sa.Column("weekend_premium", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("advance_percentage", sa.Integer(), nullable=False),
        sa.Column("advance_paid", sa.Integer(), nullable=False),
        sa.Column("remaining_amount", sa.Integer(), nullable=False),
        sa.Column("payment_status", sa.String(length=16), nullable=False),
        sa.Column("gateway_order_id", sa.String(length=64), unique=True),
        sa.Column("gateway_payment_id", sa.String(length=64)),
        sa.Column("gateway_signature", sa.String(length=128)),
        sa.Column("payment_method", sa.String(length=32)),
        sa.Column("remaining_gateway_order_id", sa.String(length=64), unique=True),
        sa.Column("remaining_gateway_payment_id", sa.String(length=64)),
        sa.Column("remaining_paid_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("actual_start_time", sa.DateTime(timezone=True)),
        sa.Column("started_by", sa.String(length=16)),
        sa.Column("actual_end_time", sa.DateTime(timezone=True)),
        sa.Column("completed_by", sa.String(length=16)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_by", sa.String(length=16)),
        sa.Column("cancellation_reason", sa.String(length=500)),
        sa.Column("reminder_sent", sa.Boolean(), nullable=False),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("refund_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_percentage", sa.Integer()),
        sa.Column("refund_reason", sa.String(length=500)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("refund_id", sa.String(length=64)),
        sa.Column("is_reviewed", sa.Boolean(), nullable=False),
        sa.Column("review_id", sa.String(length=36)),
        *_timestamps(),
    )
    op.create_index("ix_bookings_service_date_status", "bookings", ["service_id", "date", "status"])
    op.create_index("ix_bookings_customer_created", "bookings", ["customer_id", "created_at"])
    op.create_index("ix_bookings_provider_created", "bookings", ["provider_id", "created_at"])
    op.create_index("ix_bookings_status_expires", "bookings", ["status", "expires_at"])

    op.create_table(
        "payment_transactions",
        sa.Column("payment_id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.booking_id"), nullable=False),
        sa.Column("customer_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("provider_id", sa.String(length=36), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("payment_type", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("gateway_order_id", sa.String(length=64), unique=True),
        sa.Column("gateway_payment_id", sa.String(length=64)),
        sa.Column("gateway_signature", sa.String(length=128)),
        sa.Column("payment_method", sa.String(length=32)),
        sa.Column("refund_id", sa.String(length=64)),
        sa.Column("refund_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("failure_reason", sa.String(length=255)),
        *_timestamps(),
    )
    op.create_index(
        "ix_payment_transactions_booking_type", "payment_transactions", ["booking_id", "payment_type"]
    )
    op.create_index("ix_payment_transactions_customer", "payment_transactions", ["customer_id"])

    op.create_table(
        "gateway_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=128)),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("booking_id", sa.String(length=64)),
        sa.Column("last_error", sa.Text()),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_gateway_events_payload_hash", "gateway_events", ["payload_hash"])
    op.create_index("ix_gateway_events_booking_id", "gateway_events", ["booking_id"])

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("runner_id", sa.String(length=128)),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_success_at", sa.DateTime(timezone=True)),
        sa.Column("last_result", sa.JSON()),
        sa.Column("last_error", sa.String(length=128)),
        sa.Column("last_error_at", sa.DateTime(timezone=True)),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_gateway_events_booking_id", table_name="gateway_events")
    op.drop_index("ix_gateway_events_payload_hash", table_name="gateway_events")
    op.drop_table("gateway_events")
    op.drop_index("ix_payment_transactions_customer", table_name="payment_transactions")
    op.drop_index("ix_payment_transactions_booking_type", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index("ix_bookings_status_expires", table_name="bookings")
    op.drop_index("ix_bookings_provider_created", table_name="bookings")
    op.drop_index("ix_bookings_customer_created", table_name="bookings")
    op.drop_index("ix_bookings_service_date_status", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_services_provider_id", table_name="services")
    op.drop_table("services")
    op.drop_table("users")
