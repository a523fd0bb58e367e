"""
Fingerprint Service

Folds a user's geolocated activity and session device metadata into a
single UserFingerprint row per (user, server). Every recompute is a full
replace written with one atomic upsert, so repeated or concurrent runs over
the same history converge on the same profile.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Tuple

import numpy as np
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import and_

from streamguard.config import FingerprintConfig
from streamguard.core.database import SessionLocal, dialect_insert
from streamguard.models.activity import PlaybackSession
from streamguard.models.user_fingerprint import UserFingerprint
from streamguard.services.location_store import LocationStore

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 24


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class FingerprintService:
    """Builds and stores behavioral fingerprints."""

    def __init__(self, db: Session = None, config: Optional[FingerprintConfig] = None,
                 location_store: Optional[LocationStore] = None):
        self.db = db or SessionLocal()
        self.config = config or FingerprintConfig()
        self.locations = location_store or LocationStore(self.db)

    def get_fingerprint(self, server_id: int, user_id: str) -> Optional[UserFingerprint]:
        return self.db.query(UserFingerprint).filter(
            and_(UserFingerprint.user_id == user_id, UserFingerprint.server_id == server_id)
        ).first()

    def _aggregate_locations(self, activities) -> Tuple[List[str], List[str], List[Dict[str, Any]]]:
        countries = set()
        cities = set()
        patterns: Dict[Tuple[str, Optional[str]], Dict[str, Any]] = {}

        for activity in activities:
            if activity.city:
                cities.add(activity.city)
            if not activity.country_code:
                continue
            countries.add(activity.country_code)

            key = (activity.country_code, activity.city)
            pattern = patterns.get(key)
            if pattern is None:
                # Activities arrive oldest first; the first sighting supplies the coordinates
                patterns[key] = {
                    "country": activity.country_code,
                    "city": activity.city,
                    "latitude": activity.latitude,
                    "longitude": activity.longitude,
                    "session_count": 1,
                    "last_seen_at": activity.date,
                }
            else:
                pattern["session_count"] += 1
                if activity.date > pattern["last_seen_at"]:
                    pattern["last_seen_at"] = activity.date

        ordered = sorted(
            patterns.values(),
            key=lambda p: (-p["session_count"], p["country"], p["city"] or ""),
        )
        for pattern in ordered:
            pattern["last_seen_at"] = _iso(pattern["last_seen_at"])
        return sorted(countries), sorted(cities), ordered

    def _aggregate_devices(self, sessions: List[PlaybackSession]) -> Tuple[List[str], List[str], List[Dict[str, Any]]]:
        clients = set()
        patterns: Dict[str, Dict[str, Any]] = {}

        for session in sessions:
            if session.client_name:
                clients.add(session.client_name)
            if not session.device_id:
                continue

            pattern = patterns.get(session.device_id)
            if pattern is None:
                patterns[session.device_id] = {
                    "device_id": session.device_id,
                    "device_name": session.device_name,
                    "client_name": session.client_name,
                    "session_count": 1,
                    "last_seen_at": session.start_time,
                }
                continue

            pattern["session_count"] += 1
            # Name and client follow the most recent session on the device
            if session.start_time and (pattern["last_seen_at"] is None or session.start_time >= pattern["last_seen_at"]):
                pattern["last_seen_at"] = session.start_time
                pattern["device_name"] = session.device_name or pattern["device_name"]
                pattern["client_name"] = session.client_name or pattern["client_name"]

        ordered = sorted(patterns.values(), key=lambda p: (-p["session_count"], p["device_id"]))
        for pattern in ordered:
            pattern["last_seen_at"] = _iso(pattern["last_seen_at"])
        return sorted(patterns), sorted(clients), ordered

    @staticmethod
    def _hour_histogram(dates: List[datetime]) -> Dict[str, int]:
        hours = np.array([d.hour for d in dates], dtype=int)
        counts = np.bincount(hours, minlength=HOURS_PER_DAY)
        return {str(hour): int(counts[hour]) for hour in range(HOURS_PER_DAY)}

    @staticmethod
    def _avg_per_day(dates: List[datetime]) -> float:
        if not dates:
            return 0.0
        days = np.unique(np.array([d.date().isoformat() for d in dates]))
        return float(len(dates) / max(1, len(days)))

    def build_profile(self, server_id: int, user_id: str) -> Dict[str, Any]:
        """Compute the fingerprint fields for a user without writing them."""
        since = None
        if self.config.window_days:
            since = datetime.utcnow() - timedelta(days=self.config.window_days)

        activities = self.locations.user_located_activities(server_id, user_id, since=since)

        session_query = self.db.query(PlaybackSession).filter(
            and_(PlaybackSession.user_id == user_id, PlaybackSession.server_id == server_id)
        )
        if since is not None:
            session_query = session_query.filter(PlaybackSession.start_time >= since)
        sessions = session_query.order_by(PlaybackSession.start_time, PlaybackSession.id).all()

        countries, cities, location_patterns = self._aggregate_locations(activities)
        device_ids, clients, device_patterns = self._aggregate_devices(sessions)
        dates = [a.date for a in activities]

        return {
            "user_id": user_id,
            "server_id": server_id,
            "known_countries": countries,
            "known_cities": cities,
            "known_device_ids": device_ids,
            "known_clients": clients,
            "location_patterns": location_patterns,
            "device_patterns": device_patterns,
            "hour_histogram": self._hour_histogram(dates),
            "avg_sessions_per_day": self._avg_per_day(dates),
            "total_sessions": len(activities),
        }

    def recompute(self, server_id: int, user_id: str) -> UserFingerprint:
        """Rebuild and upsert a user's fingerprint.

        A user without geolocated activity still gets a row with empty
        collections, so "no profile yet" and "empty profile" stay distinct.
        On failure the transaction is rolled back and the previous
        fingerprint is left as it was.
        """
        profile = self.build_profile(server_id, user_id)
        now = datetime.utcnow()
        values = dict(profile, last_calculated_at=now, created_at=now, updated_at=now)

        replaced = {key: values[key] for key in values if key not in ("user_id", "server_id", "created_at")}
        stmt = dialect_insert(self.db, UserFingerprint.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "server_id"],
            set_=replaced,
        )

        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Fingerprint recompute failed for user {user_id} on server {server_id}")
            raise

        logger.debug(
            f"Fingerprint updated user_id={user_id} server_id={server_id} "
            f"sessions={profile['total_sessions']} countries={len(profile['known_countries'])}"
        )
        return self.get_fingerprint(server_id, user_id)

    def rebuild_server(self, server_id: int) -> int:
        """Recompute fingerprints for every user seen on a server."""
        start_time = datetime.utcnow()
        user_ids = self.locations.users_with_activity(server_id)

        if not user_ids:
            logger.info(f"No users with activity on server {server_id}, nothing to fingerprint")
            return 0

        for user_id in user_ids:
            self.recompute(server_id, user_id)

        duration_ms = (datetime.utcnow() - start_time).total_seconds() * 1000
        logger.info(f"Fingerprints rebuilt server_id={server_id} users={len(user_ids)} duration_ms={duration_ms:.0f}")
        return len(user_ids)
