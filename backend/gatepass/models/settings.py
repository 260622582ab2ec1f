"""
Single-row-per-key tables: serial counters, event policy knobs, audit trail.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from gatepass.core.clock import utcnow
from gatepass.db.base import Base


class SerialCounter(Base):
    __tablename__ = "serial_counters"

    ticket_class = Column(String(20), primary_key=True)
    count = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SerialCounter({self.ticket_class}={self.count})>"


class EventSetting(Base):
    __tablename__ = "event_settings"

    key = Column(String(64), primary_key=True)
    value = Column(String(255), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String(100), nullable=False)
    action = Column(String(64), nullable=False)
    target_id = Column(String(36), nullable=True)
    details = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_created_at", "created_at"),
    )
