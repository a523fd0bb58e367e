from sqlalchemy import Column, String, DateTime, Integer, Text, Index, ForeignKey, func
from sqlalchemy.orm import relationship
from streamguard.core.database import Base

# Users, activities and sessions are written by the media-server sync process.
# They are mapped here so location and anomaly queries can join against them.

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)  # External user ID from server
    server_id = Column(Integer, nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=func.now())

    activities = relationship("Activity", back_populates="user")


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String, primary_key=True)  # External activity ID from server
    server_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=False)
    short_overview = Column(Text, nullable=True)  # Carries "IP address: x.x.x.x" for session events
    type = Column(String, nullable=False)  # SessionStarted, VideoPlayback, AuthenticationSucceeded, ...
    date = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=func.now())

    # Relationships
    user = relationship("User", back_populates="activities")
    location = relationship(
        "ActivityLocation", back_populates="activity", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_activities_server_user_date", "server_id", "user_id", "date"),
    )


class PlaybackSession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    server_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    # Device information
    device_id = Column(String, nullable=True)
    device_name = Column(String, nullable=True)
    client_name = Column(String, nullable=True)
    remote_end_point = Column(String, nullable=True)

    # Playback timing
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    last_activity_date = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_sessions_server_user_start", "server_id", "user_id", "start_time"),
    )
