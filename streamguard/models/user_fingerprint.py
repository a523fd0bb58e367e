from sqlalchemy import Column, String, DateTime, Integer, Float, UniqueConstraint, ForeignKey, func
from streamguard.core.database import Base, JSONType

class UserFingerprint(Base):
    """Aggregated behavioral profile for one user on one server."""
    __tablename__ = "user_fingerprints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    server_id = Column(Integer, nullable=False, index=True)

    # Known sets, stored as sorted JSON lists
    known_countries = Column(JSONType, nullable=False, default=list)
    known_cities = Column(JSONType, nullable=False, default=list)
    known_device_ids = Column(JSONType, nullable=False, default=list)
    known_clients = Column(JSONType, nullable=False, default=list)

    # [{country, city, latitude, longitude, session_count, last_seen_at}]
    location_patterns = Column(JSONType, nullable=False, default=list)
    # [{device_id, device_name, client_name, session_count, last_seen_at}]
    device_patterns = Column(JSONType, nullable=False, default=list)
    # {"0": count, ..., "23": count}, UTC hours
    hour_histogram = Column(JSONType, nullable=False, default=dict)

    avg_sessions_per_day = Column(Float, nullable=False, default=0.0)
    total_sessions = Column(Integer, nullable=False, default=0)

    last_calculated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "server_id", name="uq_user_fingerprints_user_server"),
    )
