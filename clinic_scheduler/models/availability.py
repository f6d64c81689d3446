"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, Index, Integer, String
from clinic_scheduler.database import Base


class AvailabilityEntryRecord(Base):
    """A declared availability, unavailability or break window.

    Recurring entries store their first window and the recurrence rule; the
    occurrences are expanded again on load. A revoked entry keeps its row with
    ``revoked`` set, so a late save cannot bring it back.
    """
    __tablename__ = "availability_entries"
    __table_args__ = (
        Index("idx_availability_provider_start", "provider_id", "start_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=False)
    provider_id = Column(String, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    kind = Column(String, nullable=False)
    recurrence_frequency = Column(String)
    recurrence_until = Column(Date)
    reason = Column(String(200))
    created_at = Column(DateTime(timezone=True))
    # Offset of the caller's timezone; NULL for naive windows. Aware instants are stored in UTC.
    utc_offset_minutes = Column(Integer)
    revoked = Column(Boolean, nullable=False, default=False)
