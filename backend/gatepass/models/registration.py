"""
Registration model: one row per identity, the unit of allocation.

Key design decisions:
- Unique constraint on email enforces one registration per identity
- `status` is the state machine; rows are never deleted
- `ticket_class` picks the serial counter (FREE/DRAW/PAID/VIP/GST/VOL)
- `serial` stays NULL until a ticket is materialized
- Composite index on (channel, status) backs every capacity COUNT
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
)

from gatepass.db.base import Base, TimestampMixin


class Channel(str, enum.Enum):
    FCFS = "fcfs"
    LOTTERY = "lottery"
    PAID = "paid"
    INVITE = "invite"
    VOLUNTEER = "volunteer"


class TicketClass(str, enum.Enum):
    FREE = "free"
    DRAW = "draw"
    PAID = "paid"
    VIP = "vip"
    GUEST = "guest"
    VOLUNTEER = "volunteer"


class RegistrationStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PENDING_DRAW = "pending_draw"
    APPROVED = "approved"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    EXPIRED = "expired"
    DRAW_LOST = "draw_lost"
    REVOKED = "revoked"


# Rows in these states no longer hold a slot
RELEASED_STATUSES = (
    RegistrationStatus.EXPIRED,
    RegistrationStatus.DRAW_LOST,
    RegistrationStatus.REVOKED,
)

# Rows that have been (or are about to be) issued a ticket
ADMITTED_STATUSES = (
    RegistrationStatus.APPROVED,
    RegistrationStatus.CONFIRMED,
    RegistrationStatus.CHECKED_IN,
)

# Rows that cannot pass the gate
NON_ADMITTING_STATUSES = (
    RegistrationStatus.EXPIRED,
    RegistrationStatus.REVOKED,
    RegistrationStatus.PENDING_PAYMENT,
    RegistrationStatus.PENDING_DRAW,
    RegistrationStatus.PENDING,
    RegistrationStatus.DRAW_LOST,
)

# The free pool is shared by FCFS admissions and lottery entries
FREE_POOL = (Channel.FCFS, Channel.LOTTERY)

CHANNEL_LABELS = {
    TicketClass.FREE: "Free Entry",
    TicketClass.DRAW: "Lucky Draw",
    TicketClass.PAID: "Paid Entry",
    TicketClass.VIP: "VIP Access",
    TicketClass.GUEST: "Special Guest",
    TicketClass.VOLUNTEER: "Volunteer",
}


def _in_list(values) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


class Registration(Base, TimestampMixin):
    __tablename__ = "registrations"

    id = Column(String(36), primary_key=True)
    serial = Column(String(20), unique=True, nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False, default="")
    phone = Column(String(50), nullable=False, default="")
    channel = Column(String(20), nullable=False)
    ticket_class = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=RegistrationStatus.PENDING.value)
    guest_code_id = Column(String(36), ForeignKey("guest_list_codes.id"), nullable=True)
    volunteer_code_id = Column(String(36), ForeignKey("volunteer_codes.id"), nullable=True)
    plus_one = Column(Boolean, nullable=False, default=False)
    draw_entry = Column(Boolean, nullable=False, default=False)
    payment_expires_at = Column(DateTime(timezone=True), nullable=True)
    order_id = Column(String(36), nullable=True, index=True)

    __table_args__ = (
        CheckConstraint(f"channel IN ({_in_list(Channel)})", name="check_registration_channel"),
        CheckConstraint(f"ticket_class IN ({_in_list(TicketClass)})", name="check_registration_ticket_class"),
        CheckConstraint(f"status IN ({_in_list(RegistrationStatus)})", name="check_registration_status"),
        # Capacity counts filter on channel + status
        Index("ix_registrations_channel_status", "channel", "status"),
        # Expiry sweep scans pending_payment rows by deadline
        Index("ix_registrations_status_payment_expires", "status", "payment_expires_at"),
        # Waitlist promotion picks the oldest pending_draw row
        Index("ix_registrations_status_created", "status", "created_at"),
    )

    @property
    def channel_label(self) -> str:
        try:
            return CHANNEL_LABELS[TicketClass(self.ticket_class)]
        except ValueError:
            return self.ticket_class

    def __repr__(self) -> str:
        return f"<Registration(id={self.id}, email={self.email}, channel={self.channel}, status={self.status})>"
