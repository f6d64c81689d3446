"""Appointment model definitions."""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from clinic_scheduler.database import Base


class AppointmentRecord(Base):
    """Stored snapshot of an appointment; ``version`` only ever increases."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_provider_start", "provider_id", "start_time"),
        Index("idx_appointments_client_start", "client_id", "start_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=False)
    provider_id = Column(String, nullable=False)
    client_id = Column(String, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False)
    appointment_type = Column(String, nullable=False)
    notes = Column(Text)
    reason = Column(Text)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)
    # Offset of the caller's timezone; NULL for naive windows. Aware instants are stored in UTC.
    utc_offset_minutes = Column(Integer)
