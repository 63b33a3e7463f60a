# backend/alembic/versions/001_settlement_schema.py
"""Settlement schema - users, services, day capacity, bookings, payments, withdrawals

Revision ID: 001_settlement_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates every table of the booking and settlement engine, including the
per-day capacity counters and the partial unique index that allows one
open withdrawal per user.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_settlement_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_WITHDRAWAL_PREDICATE = sa.text("status IN ('pending', 'processing')")


def upgrade() -> None:
    """Create settlement schema."""
    print("Creating settlement schema...")

    op.create_table(
        "users",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("is_provider", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("account_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "account_balance >= 0", name="ck_users_account_balance_non_negative"
        ),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "services",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("provider_id", sa.String(26), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("price_type", sa.String(20), nullable=False, server_default="fixed"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("max_bookings", sa.Integer(), nullable=True),
        sa.Column("booking_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["provider_id"], ["users.id"]),
        sa.CheckConstraint("price >= 0", name="ck_services_price_non_negative"),
        sa.CheckConstraint("price_type IN ('fixed', 'hourly')", name="ck_services_price_type"),
        sa.CheckConstraint("status IN ('active', 'inactive')", name="ck_services_status"),
        sa.CheckConstraint(
            "max_bookings IS NULL OR max_bookings > 0", name="ck_services_max_bookings_positive"
        ),
    )
    op.create_index("ix_services_id", "services", ["id"])
    op.create_index("ix_services_provider_id", "services", ["provider_id"])

    # One row per (service, UTC day); reserved_count is bumped conditionally against max_bookings
    op.create_table(
        "service_day_capacity",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("service_id", sa.String(26), nullable=False),
        sa.Column("booking_day", sa.String(10), nullable=False),
        sa.Column("reserved_count", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("service_id", "booking_day", name="uq_service_day_capacity"),
        sa.CheckConstraint("reserved_count >= 0", name="ck_service_day_capacity_non_negative"),
    )
    op.create_index(
        "ix_service_day_capacity_service_id", "service_day_capacity", ["service_id"]
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("service_id", sa.String(26), nullable=False),
        sa.Column("client_id", sa.String(26), nullable=False),
        sa.Column("provider_id", sa.String(26), nullable=False),
        sa.Column("booking_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(26), nullable=True),
        sa.Column(
            "holds_capacity_slot", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["service_id"], ["services.id"]),
        sa.ForeignKeyConstraint(["client_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["provider_id"], ["users.id"]),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        sa.CheckConstraint("client_id <> provider_id", name="ck_bookings_client_not_provider"),
        sa.CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_bookings_completed_at",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"])
    op.create_index("ix_bookings_client_id", "bookings", ["client_id"])
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"])
    op.create_index("ix_bookings_booking_date", "bookings", ["booking_date"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_created_at", "bookings", ["created_at"])
    op.create_index("ix_bookings_status_created_at", "bookings", ["status", "created_at"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("booking_id", sa.String(26), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("service_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("net_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(20), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("pix_code", sa.Text(), nullable=True),
        sa.Column("pix_qr_code", sa.Text(), nullable=True),
        sa.Column("pix_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("boleto_url", sa.Text(), nullable=True),
        sa.Column("boleto_barcode", sa.String(255), nullable=True),
        sa.Column("boleto_due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("disputed_by", sa.String(26), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"]),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'paid', 'failed', 'refunded', 'released')",
            name="ck_payments_status",
        ),
        sa.CheckConstraint(
            "released_at IS NULL OR status = 'released'", name="ck_payments_released_at"
        ),
    )
    op.create_index("ix_payments_id", "payments", ["id"])
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"], unique=True)
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_gateway_transaction_id", "payments", ["gateway_transaction_id"])
    op.create_index(
        "ix_payments_status_escrow_release_date", "payments", ["status", "escrow_release_date"]
    )

    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("bank_name", sa.String(120), nullable=False),
        sa.Column("account_type", sa.String(20), nullable=False),
        sa.Column("account_number", sa.String(30), nullable=False),
        sa.Column("agency_number", sa.String(10), nullable=False),
        sa.Column("holder_name", sa.String(255), nullable=False),
        sa.Column("holder_cpf", sa.String(11), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint(
            "user_id", "agency_number", "account_number", name="uq_bank_accounts_user_account"
        ),
        sa.CheckConstraint(
            "account_type IN ('checking', 'savings')", name="ck_bank_accounts_account_type"
        ),
    )
    op.create_index("ix_bank_accounts_id", "bank_accounts", ["id"])
    op.create_index("ix_bank_accounts_user_id", "bank_accounts", ["user_id"])

    op.create_table(
        "withdrawals",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("bank_account_id", sa.String(26), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transfer_id", sa.String(255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["bank_account_id"], ["bank_accounts.id"], ondelete="SET NULL"),
        sa.CheckConstraint("amount > 0", name="ck_withdrawals_amount_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_withdrawals_status",
        ),
    )
    op.create_index("ix_withdrawals_id", "withdrawals", ["id"])
    op.create_index("ix_withdrawals_user_id", "withdrawals", ["user_id"])
    op.create_index("ix_withdrawals_transfer_id", "withdrawals", ["transfer_id"])
    # At most one pending or processing withdrawal per user
    op.create_index(
        "uq_withdrawals_one_open_per_user",
        "withdrawals",
        ["user_id"],
        unique=True,
        postgresql_where=OPEN_WITHDRAWAL_PREDICATE,
        sqlite_where=OPEN_WITHDRAWAL_PREDICATE,
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_read_created", "notifications", ["is_read", "created_at"])

    print("Settlement schema created")


def downgrade() -> None:
    """Drop settlement schema."""
    print("Dropping settlement schema...")

    op.drop_index("ix_notifications_read_created", table_name="notifications")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("uq_withdrawals_one_open_per_user", table_name="withdrawals")
    op.drop_index("ix_withdrawals_transfer_id", table_name="withdrawals")
    op.drop_index("ix_withdrawals_user_id", table_name="withdrawals")
    op.drop_index("ix_withdrawals_id", table_name="withdrawals")
    op.drop_table("withdrawals")

    op.drop_index("ix_bank_accounts_user_id", table_name="bank_accounts")
    op.drop_index("ix_bank_accounts_id", table_name="bank_accounts")
    op.drop_table("bank_accounts")

    op.drop_index("ix_payments_status_escrow_release_date", table_name="payments")
    op.drop_index("ix_payments_gateway_transaction_id", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_booking_id", table_name="payments")
    op.drop_index("ix_payments_id", table_name="payments")
    op.drop_table("payments")

    for index_name in (
        "ix_bookings_status_created_at",
        "ix_bookings_created_at",
        "ix_bookings_status",
        "ix_bookings_booking_date",
        "ix_bookings_provider_id",
        "ix_bookings_client_id",
        "ix_bookings_service_id",
        "ix_bookings_id",
    ):
        op.drop_index(index_name, table_name="bookings")
    op.drop_table("bookings")

    op.drop_index("ix_service_day_capacity_service_id", table_name="service_day_capacity")
    op.drop_table("service_day_capacity")

    op.drop_index("ix_services_provider_id", table_name="services")
    op.drop_index("ix_services_id", table_name="services")
    op.drop_table("services")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")

    print("Settlement schema dropped")
