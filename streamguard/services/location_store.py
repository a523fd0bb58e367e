import logging
from datetime import datetime
from typing import Dict, List, Any, Optional, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import func, and_, desc, distinct

from streamguard.core.database import SessionLocal
from streamguard.models.activity import Activity, User, PlaybackSession
from streamguard.models.activity_location import ActivityLocation, UNKNOWN_IP
from streamguard.models.user_fingerprint import UserFingerprint
from streamguard.models.anomaly_event import AnomalyEvent
from streamguard.services.geo_math import is_valid_coordinate

logger = logging.getLogger(__name__)


class LocationStore:
    """Read/write access to activity geolocations and their aggregates.

    Every read used for display or detection leaves out private-IP rows.
    History is ordered by the activity's own timestamp, because location rows
    can be backfilled long after the activity happened.
    """

    def __init__(self, db: Session = None):
        self.db = db or SessionLocal()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_location(self, location: ActivityLocation) -> ActivityLocation:
        self.db.add(location)
        self.db.flush()
        return location

    def get_location(self, activity_id: str) -> Optional[ActivityLocation]:
        return self.db.query(ActivityLocation).filter(ActivityLocation.activity_id == activity_id).first()

    # ------------------------------------------------------------------
    # Geolocation work queue
    # ------------------------------------------------------------------

    def _pending_query(self, server_id: int):
        return self.db.query(Activity).outerjoin(
            ActivityLocation, Activity.id == ActivityLocation.activity_id
        ).filter(
            and_(Activity.server_id == server_id,
                 ActivityLocation.id.is_(None),
                 Activity.short_overview.isnot(None),
                 Activity.short_overview.like("%IP%"))
        )

    def pending_activities(self, server_id: int, limit: int = 100) -> List[Activity]:
        """Activities with an IP in their overview and no location yet, oldest first."""
        return self._pending_query(server_id).order_by(Activity.date, Activity.id).limit(limit).all()

    def count_pending(self, server_id: int) -> int:
        return self._pending_query(server_id).count()

    # ------------------------------------------------------------------
    # Per-user reads
    # ------------------------------------------------------------------

    def _located_query(self, server_id: int, include_private: bool = False):
        query = self.db.query(ActivityLocation, Activity).join(
            Activity, ActivityLocation.activity_id == Activity.id
        ).filter(and_(Activity.server_id == server_id, ActivityLocation.ip_address != UNKNOWN_IP))
        if not include_private:
            query = query.filter(ActivityLocation.is_private_ip.is_(False))
        return query

    def user_location_history(self, server_id: int, user_id: str, limit: int = 100, offset: int = 0,
                              include_private: bool = False) -> Tuple[List[Dict[str, Any]], int]:
        """Paginated location history for a user, most recent activity first."""
        query = self._located_query(server_id, include_private).filter(Activity.user_id == user_id)
        total = query.count()
        rows = query.order_by(desc(Activity.date), desc(Activity.id)).offset(offset).limit(limit).all()

        return [
            {
                "id": location.id,
                "activity_id": location.activity_id,
                "ip_address": location.ip_address,
                "country_code": location.country_code,
                "country": location.country,
                "region": location.region,
                "city": location.city,
                "latitude": location.latitude,
                "longitude": location.longitude,
                "timezone": location.timezone,
                "is_private_ip": location.is_private_ip,
                "created_at": location.created_at,
                "activity_type": activity.type,
                "activity_name": activity.name,
                "activity_date": activity.date,
            }
            for location, activity in rows
        ], total

    def user_unique_locations(self, server_id: int, user_id: str) -> List[Dict[str, Any]]:
        """Distinct places a user has been seen at, most recently seen first."""
        last_seen = func.max(Activity.date)
        rows = self.db.query(
            ActivityLocation.country_code,
            ActivityLocation.country,
            ActivityLocation.city,
            ActivityLocation.latitude,
            ActivityLocation.longitude,
            func.count(ActivityLocation.id).label("activity_count"),
            last_seen.label("last_seen"),
        ).join(
            Activity, ActivityLocation.activity_id == Activity.id
        ).filter(
            and_(Activity.server_id == server_id,
                 Activity.user_id == user_id,
                 ActivityLocation.is_private_ip.is_(False))
        ).group_by(
            ActivityLocation.country_code,
            ActivityLocation.country,
            ActivityLocation.city,
            ActivityLocation.latitude,
            ActivityLocation.longitude,
        ).order_by(desc(last_seen)).all()

        return [
            {
                "country_code": row.country_code,
                "country": row.country,
                "city": row.city,
                "latitude": row.latitude,
                "longitude": row.longitude,
                "activity_count": int(row.activity_count),
                "last_seen": row.last_seen,
            }
            for row in rows
        ]

    def user_located_activities(self, server_id: int, user_id: str, since: Optional[datetime] = None):
        """Public geolocated activities of a user, oldest first. Input for fingerprinting."""
        query = self.db.query(
            Activity.id.label("activity_id"),
            Activity.date,
            ActivityLocation.country_code,
            ActivityLocation.country,
            ActivityLocation.city,
            ActivityLocation.latitude,
            ActivityLocation.longitude,
        ).join(
            ActivityLocation, ActivityLocation.activity_id == Activity.id
        ).filter(
            and_(Activity.server_id == server_id,
                 Activity.user_id == user_id,
                 ActivityLocation.is_private_ip.is_(False))
        )
        if since is not None:
            query = query.filter(Activity.date >= since)
        return query.order_by(Activity.date, Activity.id).all()

    def previous_located_activity(self, server_id: int, user_id: str, before: datetime,
                                  exclude_activity_id: Optional[str] = None):
        """The user's last public geolocated activity strictly before a point in time."""
        query = self.db.query(
            Activity.id.label("activity_id"),
            Activity.date,
            ActivityLocation.country_code,
            ActivityLocation.country,
            ActivityLocation.city,
            ActivityLocation.latitude,
            ActivityLocation.longitude,
        ).join(
            ActivityLocation, ActivityLocation.activity_id == Activity.id
        ).filter(
            and_(Activity.server_id == server_id,
                 Activity.user_id == user_id,
                 Activity.date < before,
                 ActivityLocation.is_private_ip.is_(False),
                 ActivityLocation.country_code.isnot(None))
        )
        if exclude_activity_id:
            query = query.filter(Activity.id != exclude_activity_id)
        return query.order_by(desc(Activity.date), desc(Activity.id)).first()

    def country_for_ip(self, server_id: int, ip_address: str) -> Optional[str]:
        """Country code already resolved for an address on this server, if any."""
        row = self.db.query(ActivityLocation.country_code).join(
            Activity, ActivityLocation.activity_id == Activity.id
        ).filter(
            and_(Activity.server_id == server_id,
                 ActivityLocation.ip_address == ip_address,
                 ActivityLocation.is_private_ip.is_(False),
                 ActivityLocation.country_code.isnot(None))
        ).order_by(desc(Activity.date)).first()
        return row.country_code if row else None

    # ------------------------------------------------------------------
    # Server-wide reads
    # ------------------------------------------------------------------

    def users_with_activity(self, server_id: int) -> List[str]:
        """Users with at least one activity or session on the server."""
        activity_users = self.db.query(distinct(Activity.user_id)).filter(
            and_(Activity.server_id == server_id, Activity.user_id.isnot(None))
        ).all()
        session_users = self.db.query(distinct(PlaybackSession.user_id)).filter(
            and_(PlaybackSession.server_id == server_id, PlaybackSession.user_id.isnot(None))
        ).all()
        return sorted({row[0] for row in activity_users} | {row[0] for row in session_users})

    def server_location_points(self, server_id: int, user_id: Optional[str] = None,
                               date_from: Optional[datetime] = None,
                               date_to: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Map points for a server, grouped by coordinates and city, with the users seen there."""
        last_seen = func.max(Activity.date)
        query = self.db.query(
            Activity.user_id,
            User.name.label("user_name"),
            ActivityLocation.country_code,
            ActivityLocation.country,
            ActivityLocation.city,
            ActivityLocation.latitude,
            ActivityLocation.longitude,
            func.count(ActivityLocation.id).label("activity_count"),
            last_seen.label("last_seen"),
        ).join(
            Activity, ActivityLocation.activity_id == Activity.id
        ).outerjoin(
            User, Activity.user_id == User.id
        ).filter(
            and_(Activity.server_id == server_id,
                 ActivityLocation.is_private_ip.is_(False))
        )

        if user_id:
            query = query.filter(Activity.user_id == user_id)
        if date_from:
            query = query.filter(Activity.date >= date_from)
        if date_to:
            query = query.filter(Activity.date <= date_to)

        rows = query.group_by(
            Activity.user_id,
            User.name,
            ActivityLocation.country_code,
            ActivityLocation.country,
            ActivityLocation.city,
            ActivityLocation.latitude,
            ActivityLocation.longitude,
        ).order_by(desc(last_seen)).all()

        points: Dict[Tuple[float, float, str], Dict[str, Any]] = {}
        for row in rows:
            if not is_valid_coordinate(row.latitude, row.longitude):
                continue

            key = (row.latitude, row.longitude, row.city or "unknown")
            user_entry = {
                "user_id": row.user_id or "unknown",
                "user_name": row.user_name,
                "activity_count": int(row.activity_count),
                "last_seen": row.last_seen,
            }

            point = points.get(key)
            if point is None:
                points[key] = {
                    "latitude": row.latitude,
                    "longitude": row.longitude,
                    "country_code": row.country_code,
                    "country": row.country,
                    "city": row.city,
                    "activity_count": int(row.activity_count),
                    "last_seen": row.last_seen,
                    "users": [user_entry],
                }
            else:
                point["activity_count"] += int(row.activity_count)
                if row.last_seen > point["last_seen"]:
                    point["last_seen"] = row.last_seen
                point["users"].append(user_entry)

        for point in points.values():
            point["users"].sort(key=lambda u: u["activity_count"], reverse=True)
        return list(points.values())

    def summary_stats(self, server_id: int) -> Dict[str, Any]:
        """Location and anomaly counts for a server."""
        located = self._located_query(server_id)
        total_located = located.count()

        unique_countries = self.db.query(distinct(ActivityLocation.country_code)).join(
            Activity, ActivityLocation.activity_id == Activity.id
        ).filter(
            and_(Activity.server_id == server_id,
                 ActivityLocation.is_private_ip.is_(False),
                 ActivityLocation.country_code.isnot(None))
        ).count()

        unique_cities = self.db.query(distinct(ActivityLocation.city)).join(
            Activity, ActivityLocation.activity_id == Activity.id
        ).filter(
            and_(Activity.server_id == server_id,
                 ActivityLocation.is_private_ip.is_(False),
                 ActivityLocation.city.isnot(None))
        ).count()

        users_with_fingerprints = self.db.query(func.count(UserFingerprint.id)).filter(
            UserFingerprint.server_id == server_id
        ).scalar() or 0

        unresolved = self.db.query(
            AnomalyEvent.severity, func.count(AnomalyEvent.id)
        ).filter(
            and_(AnomalyEvent.server_id == server_id, AnomalyEvent.resolved.is_(False))
        ).group_by(AnomalyEvent.severity).all()

        return {
            "total_located_activities": total_located,
            "pending_activities": self.count_pending(server_id),
            "unique_countries": unique_countries,
            "unique_cities": unique_cities,
            "users_with_fingerprints": int(users_with_fingerprints),
            "unresolved_anomalies": {severity: int(count) for severity, count in unresolved},
        }
