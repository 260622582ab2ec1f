"""
Ticket model: the materialized admission for a registration.

Key design decisions:
- At most one ticket per registration (unique registration_id)
- `token` is the signed gate artifact, unique across all tickets
- Only `used`/`used_at` change after creation; `used` never goes back to false
- `guest_code_id` is copied from the registration so the gate can join the
  originating guest-list code and honour its revocation
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from gatepass.core.clock import utcnow
from gatepass.db.base import Base


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(String(36), primary_key=True)
    registration_id = Column(String(36), ForeignKey("registrations.id"), unique=True, nullable=False)
    token = Column(String(255), unique=True, index=True, nullable=False)
    used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    guest_code_id = Column(String(36), ForeignKey("guest_list_codes.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<Ticket(id={self.id}, registration={self.registration_id}, used={self.used})>"
