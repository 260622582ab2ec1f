"""Initial schema: registrations, tickets, invite codes, serial counters, settings, audit log.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CHANNELS = "'fcfs', 'lottery', 'paid', 'invite', 'volunteer'"
TICKET_CLASSES = "'free', 'draw', 'paid', 'vip', 'guest', 'volunteer'"
STATUSES = (
    "'pending', 'pending_payment', 'pending_draw', 'approved', 'confirmed', "
    "'checked_in', 'expired', 'draw_lost', 'revoked'"
)


def upgrade() -> None:
    op.create_table(
        "guest_list_codes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("label", sa.String(255), nullable=False),
        sa.Column("created_by", sa.String(100), nullable=False),
        sa.Column("max_registrations", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("plus_one_allowed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("auto_approve", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("max_registrations > 0", name="check_guest_code_max_positive"),
        sa.CheckConstraint("used_count >= 0", name="check_guest_code_used_non_negative"),
        sa.CheckConstraint("used_count <= max_registrations", name="check_guest_code_used_lte_max"),
    )
    op.create_index("ix_guest_list_codes_code", "guest_list_codes", ["code"], unique=True)

    op.create_table(
        "volunteer_codes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(16), nullable=False),
        sa.Column("linked_email", sa.String(255), nullable=False),
        sa.Column("created_by", sa.String(100), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_volunteer_codes_code", "volunteer_codes", ["code"], unique=True)

    op.create_table(
        "registrations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("serial", sa.String(20), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("phone", sa.String(50), nullable=False, server_default=""),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("ticket_class", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("guest_code_id", sa.String(36), sa.ForeignKey("guest_list_codes.id"), nullable=True),
        sa.Column("volunteer_code_id", sa.String(36), sa.ForeignKey("volunteer_codes.id"), nullable=True),
        sa.Column("plus_one", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("draw_entry", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(f"channel IN ({CHANNELS})", name="check_registration_channel"),
        sa.CheckConstraint(f"ticket_class IN ({TICKET_CLASSES})", name="check_registration_ticket_class"),
        sa.CheckConstraint(f"status IN ({STATUSES})", name="check_registration_status"),
        sa.UniqueConstraint("serial", name="uq_registrations_serial"),
    )
    # One registration per identity, whatever its status
    op.create_index("ix_registrations_email", "registrations", ["email"], unique=True)
    op.create_index("ix_registrations_order_id", "registrations", ["order_id"])
    # Every capacity COUNT filters on channel + status
    op.create_index("ix_registrations_channel_status", "registrations", ["channel", "status"])
    # Expiry sweep: WHERE status = 'pending_payment' AND payment_expires_at < now
    op.create_index(
        "ix_registrations_status_payment_expires",
        "registrations",
        ["status", "payment_expires_at"],
    )
    # Waitlist promotion: oldest pending_draw row
    op.create_index("ix_registrations_status_created", "registrations", ["status", "created_at"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("registration_id", sa.String(36), sa.ForeignKey("registrations.id"), nullable=False),
        sa.Column("token", sa.String(255), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("guest_code_id", sa.String(36), sa.ForeignKey("guest_list_codes.id"), nullable=True),
        sa.UniqueConstraint("registration_id", name="uq_tickets_registration_id"),
    )
    op.create_index("ix_tickets_token", "tickets", ["token"], unique=True)

    op.create_table(
        "serial_counters",
        sa.Column("ticket_class", sa.String(20), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    op.create_table(
        "event_settings",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("value", sa.String(255), nullable=False),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=True),
        sa.Column("details", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("event_settings")
    op.drop_table("serial_counters")
    op.drop_table("tickets")
    op.drop_table("registrations")
    op.drop_table("volunteer_codes")
    op.drop_table("guest_list_codes")
