from sqlalchemy import Column, String, DateTime, Integer, Text, Index, func
from streamguard.core.database import Base, JSONType

class BackgroundTask(Base):
    """Tracks backfill and fingerprint tasks run by the local task runner"""
    __tablename__ = "background_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)  # backfill-activity-locations, calculate-fingerprints
    server_id = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="created")  # created, active, completed, failed
    params = Column(JSONType, nullable=True)

    # Statistics
    activities_processed = Column(Integer, default=0)
    anomalies_detected = Column(Integer, default=0)
    fingerprints_updated = Column(Integer, default=0)

    # Timing
    created_at = Column(DateTime, default=func.now())
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_background_tasks_kind_server_status", "kind", "server_id", "status"),
    )
