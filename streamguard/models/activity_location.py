from sqlalchemy import Column, String, DateTime, Integer, Float, Boolean, ForeignKey, func
from sqlalchemy.orm import relationship
from streamguard.core.database import Base

# ip_address of the row written for an activity whose overview carries no parseable address
UNKNOWN_IP = "unknown"

class ActivityLocation(Base):
    """Geolocation resolved for one activity. Written once, never updated."""
    __tablename__ = "activity_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    activity_id = Column(
        String, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )
    ip_address = Column(String, nullable=False, index=True)

    # Geolocation data
    country_code = Column(String, nullable=True)
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    city = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    timezone = Column(String, nullable=True)

    # Private rows are kept for history but excluded from profiles and detection.
    # UNKNOWN_IP rows also set this flag so they stay out of every read; they are not private addresses.
    is_private_ip = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=func.now())

    activity = relationship("Activity", back_populates="location")
