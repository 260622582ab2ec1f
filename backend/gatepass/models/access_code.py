"""
Invitation codes: guest-list (capacity-bounded) and volunteer (single-use, email-bound).
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from gatepass.core.clock import utcnow
from gatepass.db.base import Base


class GuestListCode(Base):
    __tablename__ = "guest_list_codes"

    id = Column(String(36), primary_key=True)
    code = Column(String(16), unique=True, index=True, nullable=False)
    label = Column(String(255), nullable=False)
    created_by = Column(String(100), nullable=False)
    max_registrations = Column(Integer, nullable=False, default=10)
    used_count = Column(Integer, nullable=False, default=0)
    plus_one_allowed = Column(Boolean, nullable=False, default=False)
    auto_approve = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("max_registrations > 0", name="check_guest_code_max_positive"),
        CheckConstraint("used_count >= 0", name="check_guest_code_used_non_negative"),
        # Never more registrations than the code allows
        CheckConstraint("used_count <= max_registrations", name="check_guest_code_used_lte_max"),
    )

    @property
    def slots_left(self) -> int:
        return max(0, self.max_registrations - self.used_count)

    def __repr__(self) -> str:
        return f"<GuestListCode(code={self.code}, used={self.used_count}/{self.max_registrations})>"


class VolunteerCode(Base):
    __tablename__ = "volunteer_codes"

    id = Column(String(36), primary_key=True)
    code = Column(String(16), unique=True, index=True, nullable=False)
    linked_email = Column(String(255), nullable=False)
    created_by = Column(String(100), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, nullable=False, default=False)
    used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<VolunteerCode(code={self.code}, email={self.linked_email}, used={self.used})>"
