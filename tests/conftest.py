"""
Shared pytest fixtures for the StreamGuard test suite.

Every test gets a fresh in-memory SQLite database; the ON CONFLICT upserts
used in production compile for SQLite as well.
"""

import os
from datetime import datetime
from typing import Optional

# Must be set before streamguard.core.database creates its engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GEO_LOOKUP_URL"] = ""
os.environ["TASK_RUNNER"] = "local"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from streamguard.core.database import Base, register_models
from streamguard.models import User, Activity, PlaybackSession, ActivityLocation
from streamguard.services.geolocation import GeoLocation

register_models()

SERVER_ID = 1

# Public addresses with stable, well-known owners
TOKYO_IP = "1.1.1.1"
NEW_YORK_IP = "8.8.8.8"
LONDON_IP = "81.2.69.142"
MONTREAL_IP = "24.48.0.1"

GEO = {
    TOKYO_IP: GeoLocation("JP", "Japan", "Tokyo", "Tokyo", 35.6762, 139.6503, "Asia/Tokyo"),
    NEW_YORK_IP: GeoLocation("US", "United States", "New York", "New York", 40.7128, -74.0060, "America/New_York"),
    LONDON_IP: GeoLocation("GB", "United Kingdom", "England", "London", 51.5074, -0.1278, "Europe/London"),
    MONTREAL_IP: GeoLocation("CA", "Canada", "Quebec", "Montreal", 45.5017, -73.5673, "America/Toronto"),
}


class StaticGeoResolver:
    """Resolver backed by a fixed table; records every lookup."""

    def __init__(self, table=None):
        self.table = dict(GEO if table is None else table)
        self.calls = []

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        self.calls.append(ip)
        return self.table.get(ip)


class Seeder:
    """Writes the rows the media-server sync process would normally own."""

    def __init__(self, db, server_id: int = SERVER_ID):
        self.db = db
        self.server_id = server_id
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def user(self, user_id: str = "user-1", name: str = "alice", server_id: Optional[int] = None) -> User:
        user = User(id=user_id, server_id=server_id or self.server_id, name=name)
        self.db.add(user)
        self.db.commit()
        return user

    def activity(self, user_id: Optional[str], date: datetime, ip: Optional[str] = None,
                 overview: Optional[str] = None, server_id: Optional[int] = None,
                 activity_id: Optional[str] = None) -> Activity:
        if overview is None and ip is not None:
            overview = f"IP address: {ip}"
        activity = Activity(
            id=activity_id or self._next_id("act"),
            server_id=server_id or self.server_id,
            user_id=user_id,
            name="alice has started playing",
            short_overview=overview,
            type="SessionStarted",
            date=date,
        )
        self.db.add(activity)
        self.db.commit()
        return activity

    def location(self, activity: Activity, ip: str, private: bool = False) -> ActivityLocation:
        geo = GEO.get(ip, GeoLocation())
        location = ActivityLocation(
            activity_id=activity.id,
            ip_address=ip,
            country_code=None if private else geo.country_code,
            country=None if private else geo.country,
            region=None if private else geo.region,
            city=None if private else geo.city,
            latitude=None if private else geo.latitude,
            longitude=None if private else geo.longitude,
            timezone=None if private else geo.timezone,
            is_private_ip=private,
        )
        self.db.add(location)
        self.db.commit()
        return location

    def located_activity(self, user_id: Optional[str], date: datetime, ip: str, **kwargs):
        activity = self.activity(user_id, date, ip=ip, **kwargs)
        return activity, self.location(activity, ip)

    def session(self, user_id: str, device_id: Optional[str], start_time: datetime,
                remote_end_point: Optional[str] = None, end_time: Optional[datetime] = None,
                last_activity_date: Optional[datetime] = None, device_name: Optional[str] = None,
                client_name: Optional[str] = "Jellyfin Web", server_id: Optional[int] = None) -> PlaybackSession:
        session = PlaybackSession(
            id=self._next_id("sess"),
            server_id=server_id or self.server_id,
            user_id=user_id,
            device_id=device_id,
            device_name=device_name or (f"Device {device_id}" if device_id else None),
            client_name=client_name,
            remote_end_point=remote_end_point,
            start_time=start_time,
            end_time=end_time,
            last_activity_date=last_activity_date,
        )
        self.db.add(session)
        self.db.commit()
        return session


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def resolver():
    return StaticGeoResolver()
