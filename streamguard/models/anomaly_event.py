import enum
from sqlalchemy import Column, String, DateTime, Integer, Text, Boolean, Index, UniqueConstraint, ForeignKey, func
from sqlalchemy.orm import relationship
from streamguard.core.database import Base, JSONType


class AnomalyType(str, enum.Enum):
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    NEW_COUNTRY = "new_country"
    NEW_DEVICE = "new_device"
    CONCURRENT_STREAMS = "concurrent_streams"
    NEW_LOCATION = "new_location"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyEvent(Base):
    __tablename__ = "anomaly_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    server_id = Column(Integer, nullable=False, index=True)
    activity_id = Column(String, ForeignKey("activities.id", ondelete="SET NULL"), nullable=True, index=True)

    anomaly_type = Column(String, nullable=False, index=True)  # AnomalyType value
    severity = Column(String, nullable=False)  # Severity value
    details = Column(JSONType, nullable=False)  # Tagged by details["kind"], see schemas.anomalies
    # Country code, "country:city" or device id the new_* anomaly is about
    signal_key = Column(String, nullable=True)

    # Resolution status
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)
    resolution_note = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now(), index=True)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("activity_id", "anomaly_type", name="uq_anomaly_events_activity_type"),
        Index("idx_anomaly_events_signal", "server_id", "user_id", "anomaly_type", "signal_key"),
    )
