"""
Anomaly Detector

Compares one newly geolocated activity against the user's fingerprint and
recent activity, and records an AnomalyEvent for every rule that fires.
Detection only inserts rows; fingerprints are never touched here.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Set

from pydantic import BaseModel
from sqlalchemy import and_, desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from streamguard.config import DetectionConfig
from streamguard.core.database import SessionLocal, dialect_insert
from streamguard.models.activity import Activity, PlaybackSession
from streamguard.models.activity_location import ActivityLocation
from streamguard.models.anomaly_event import AnomalyEvent, AnomalyType, Severity
from streamguard.models.user_fingerprint import UserFingerprint
from streamguard.schemas.anomalies import (
    LocationSnapshot, StreamSnapshot,
    ImpossibleTravelDetails, NewCountryDetails, NewDeviceDetails,
    ConcurrentStreamsDetails, NewLocationDetails,
)
from streamguard.services.geo_math import haversine_distance_km, travel_speed_kmh, is_valid_coordinate
from streamguard.services.geolocation import normalize_ip, is_private_ip
from streamguard.services.location_store import LocationStore

logger = logging.getLogger(__name__)

# Types that describe something seen for the first time; raised once per user and signal
FIRST_SIGHTING_TYPES = {AnomalyType.NEW_COUNTRY, AnomalyType.NEW_LOCATION, AnomalyType.NEW_DEVICE}


@dataclass
class Finding:
    anomaly_type: AnomalyType
    severity: Severity
    details: BaseModel
    signal_key: Optional[str] = None


class AnomalyDetector:
    """Rule-based detection for geolocated activity."""

    def __init__(self, db: Session = None, config: Optional[DetectionConfig] = None,
                 location_store: Optional[LocationStore] = None):
        self.db = db or SessionLocal()
        self.config = config or DetectionConfig()
        self.locations = location_store or LocationStore(self.db)

    # ------------------------------------------------------------------
    # Context lookups
    # ------------------------------------------------------------------

    def _fingerprint(self, server_id: int, user_id: str) -> Optional[UserFingerprint]:
        return self.db.query(UserFingerprint).filter(
            and_(UserFingerprint.user_id == user_id, UserFingerprint.server_id == server_id)
        ).first()

    def _existing_types(self, activity_id: str) -> Set[str]:
        rows = self.db.query(AnomalyEvent.anomaly_type).filter(AnomalyEvent.activity_id == activity_id).all()
        return {row.anomaly_type for row in rows}

    def _already_signalled(self, server_id: int, user_id: str, finding: Finding) -> bool:
        return self.db.query(AnomalyEvent.id).filter(
            and_(AnomalyEvent.server_id == server_id,
                 AnomalyEvent.user_id == user_id,
                 AnomalyEvent.anomaly_type == finding.anomaly_type.value,
                 AnomalyEvent.signal_key == finding.signal_key)
        ).first() is not None

    def _latest_session(self, activity: Activity) -> Optional[PlaybackSession]:
        """The user's most recent session with a device, at or before the activity."""
        return self.db.query(PlaybackSession).filter(
            and_(PlaybackSession.user_id == activity.user_id,
                 PlaybackSession.server_id == activity.server_id,
                 PlaybackSession.device_id.isnot(None),
                 PlaybackSession.start_time <= activity.date)
        ).order_by(desc(PlaybackSession.start_time)).first()

    @staticmethod
    def _snapshot(activity: Activity, location: ActivityLocation) -> LocationSnapshot:
        return LocationSnapshot(
            country_code=location.country_code,
            country=location.country,
            city=location.city,
            latitude=location.latitude,
            longitude=location.longitude,
            activity_id=activity.id,
            activity_time=activity.date,
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _check_new_country(self, activity: Activity, location: ActivityLocation,
                           fingerprint: Optional[UserFingerprint]) -> Optional[Finding]:
        known = list(fingerprint.known_countries or []) if fingerprint else []
        if location.country_code in known:
            return None

        # A profile that is still forming gets more scrutiny
        severity = Severity.HIGH if len(known) < self.config.forming_profile_countries else Severity.MEDIUM
        place = location.country or location.country_code
        return Finding(
            anomaly_type=AnomalyType.NEW_COUNTRY,
            severity=severity,
            details=NewCountryDetails(
                description=f"First access from {place}",
                current_location=self._snapshot(activity, location),
                known_country_count=len(known),
            ),
            signal_key=location.country_code,
        )

    def _check_new_device(self, activity: Activity, location: ActivityLocation,
                          fingerprint: Optional[UserFingerprint]) -> Optional[Finding]:
        session = self._latest_session(activity)
        if session is None:
            return None

        known = (fingerprint.known_device_ids or []) if fingerprint else []
        if session.device_id in known:
            return None

        return Finding(
            anomaly_type=AnomalyType.NEW_DEVICE,
            severity=Severity.LOW,
            details=NewDeviceDetails(
                description=f"First access from device: {session.device_name or session.device_id}",
                device_id=session.device_id,
                device_name=session.device_name,
                client_name=session.client_name,
                current_location=self._snapshot(activity, location),
            ),
            signal_key=session.device_id,
        )

    def _check_new_location(self, activity: Activity, location: ActivityLocation,
                            fingerprint: Optional[UserFingerprint]) -> Optional[Finding]:
        if fingerprint is None or not location.city:
            return None
        # A wholly new country is new_country's job
        if location.country_code not in (fingerprint.known_countries or []):
            return None

        known_places = {(p.get("country"), p.get("city")) for p in fingerprint.location_patterns or []}
        if (location.country_code, location.city) in known_places:
            return None

        return Finding(
            anomaly_type=AnomalyType.NEW_LOCATION,
            severity=Severity.LOW,
            details=NewLocationDetails(
                description=f"First access from {location.city}, {location.country or location.country_code}",
                current_location=self._snapshot(activity, location),
            ),
            signal_key=f"{location.country_code}:{location.city}",
        )

    def _check_impossible_travel(self, activity: Activity, location: ActivityLocation) -> Optional[Finding]:
        if not is_valid_coordinate(location.latitude, location.longitude):
            return None

        previous = self.locations.previous_located_activity(
            activity.server_id, activity.user_id, before=activity.date, exclude_activity_id=activity.id
        )
        if previous is None or not is_valid_coordinate(previous.latitude, previous.longitude):
            return None

        distance_km = haversine_distance_km(
            (previous.latitude, previous.longitude), (location.latitude, location.longitude)
        )
        time_diff_minutes = (activity.date - previous.date).total_seconds() / 60
        speed_kmh = travel_speed_kmh(distance_km, time_diff_minutes)
        if speed_kmh is None:
            return None

        if speed_kmh <= self.config.impossible_speed_kmh or distance_km <= self.config.min_travel_distance_km:
            return None

        severity = Severity.CRITICAL if speed_kmh > self.config.critical_speed_kmh else Severity.HIGH
        return Finding(
            anomaly_type=AnomalyType.IMPOSSIBLE_TRAVEL,
            severity=severity,
            details=ImpossibleTravelDetails(
                description=(
                    f"Impossible travel detected: {distance_km:.0f} km in "
                    f"{time_diff_minutes:.0f} minutes ({speed_kmh:.0f} km/h)"
                ),
                previous_location=LocationSnapshot(
                    country_code=previous.country_code,
                    country=previous.country,
                    city=previous.city,
                    latitude=previous.latitude,
                    longitude=previous.longitude,
                    activity_id=previous.activity_id,
                    activity_time=previous.date,
                ),
                current_location=self._snapshot(activity, location),
                distance_km=distance_km,
                time_diff_minutes=time_diff_minutes,
                speed_kmh=speed_kmh,
                previous_activity_id=previous.activity_id,
            ),
        )

    def _check_concurrent_streams(self, activity: Activity) -> Optional[Finding]:
        window_minutes = self.config.concurrent_window_minutes
        window_start = activity.date - timedelta(minutes=window_minutes)
        last_seen = func.coalesce(
            PlaybackSession.end_time, PlaybackSession.last_activity_date, PlaybackSession.start_time
        )

        sessions = self.db.query(PlaybackSession).filter(
            and_(PlaybackSession.user_id == activity.user_id,
                 PlaybackSession.server_id == activity.server_id,
                 PlaybackSession.device_id.isnot(None),
                 PlaybackSession.remote_end_point.isnot(None),
                 PlaybackSession.start_time <= activity.date,
                 last_seen >= window_start)
        ).order_by(PlaybackSession.start_time, PlaybackSession.id).all()

        streams: List[StreamSnapshot] = []
        for session in sessions:
            ip = normalize_ip(session.remote_end_point)
            if is_private_ip(ip):
                continue
            country_code = self.locations.country_for_ip(activity.server_id, ip)
            if country_code is None:
                continue
            streams.append(StreamSnapshot(
                session_id=session.id,
                device_id=session.device_id,
                device_name=session.device_name,
                client_name=session.client_name,
                country_code=country_code,
                ip_address=ip,
            ))

        device_count = len({s.device_id for s in streams})
        country_count = len({s.country_code for s in streams})
        if len(streams) < self.config.concurrent_min_sessions or device_count < 2 or country_count < 2:
            return None

        return Finding(
            anomaly_type=AnomalyType.CONCURRENT_STREAMS,
            severity=Severity.HIGH,
            details=ConcurrentStreamsDetails(
                description=(
                    f"{len(streams)} concurrent sessions from {country_count} countries "
                    f"within {window_minutes} minutes"
                ),
                window_minutes=window_minutes,
                sessions=streams,
                device_count=device_count,
                country_count=country_count,
            ),
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def evaluate(self, activity: Activity, location: ActivityLocation) -> List[Finding]:
        """Run every applicable rule without writing anything."""
        if not activity.user_id or location is None:
            return []
        if location.is_private_ip or not location.country_code:
            return []

        already = self._existing_types(activity.id)
        fingerprint = self._fingerprint(activity.server_id, activity.user_id)

        rules = [
            (AnomalyType.NEW_COUNTRY, lambda: self._check_new_country(activity, location, fingerprint)),
            (AnomalyType.NEW_DEVICE, lambda: self._check_new_device(activity, location, fingerprint)),
            (AnomalyType.NEW_LOCATION, lambda: self._check_new_location(activity, location, fingerprint)),
            (AnomalyType.IMPOSSIBLE_TRAVEL, lambda: self._check_impossible_travel(activity, location)),
            (AnomalyType.CONCURRENT_STREAMS, lambda: self._check_concurrent_streams(activity)),
        ]

        findings = []
        for anomaly_type, rule in rules:
            if anomaly_type.value in already:
                continue
            finding = rule()
            if finding is None:
                continue
            if finding.anomaly_type in FIRST_SIGHTING_TYPES and self._already_signalled(
                activity.server_id, activity.user_id, finding
            ):
                logger.debug(
                    f"Skipping {finding.anomaly_type.value} for activity {activity.id}: "
                    f"already raised for {finding.signal_key}"
                )
                continue
            findings.append(finding)
        return findings

    def detect(self, activity: Activity, location: ActivityLocation) -> List[AnomalyEvent]:
        """Evaluate an activity and persist the resulting anomalies."""
        findings = self.evaluate(activity, location)
        if not findings:
            return []

        inserted_types = []
        try:
            for finding in findings:
                stmt = dialect_insert(self.db, AnomalyEvent.__table__).values(
                    user_id=activity.user_id,
                    server_id=activity.server_id,
                    activity_id=activity.id,
                    anomaly_type=finding.anomaly_type.value,
                    severity=finding.severity.value,
                    details=finding.details.model_dump(mode="json"),
                    signal_key=finding.signal_key,
                    resolved=False,
                ).on_conflict_do_nothing(index_elements=["activity_id", "anomaly_type"])
                result = self.db.execute(stmt)
                # A concurrent detector may have won the race for this activity and type
                if result.rowcount:
                    inserted_types.append(finding.anomaly_type.value)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to record anomalies for activity {activity.id}")
            raise

        if not inserted_types:
            return []

        logger.info(
            f"Anomalies detected user_id={activity.user_id} activity_id={activity.id} "
            f"count={len(inserted_types)} types={','.join(inserted_types)}"
        )
        events = self.db.query(AnomalyEvent).filter(
            and_(AnomalyEvent.activity_id == activity.id, AnomalyEvent.anomaly_type.in_(inserted_types))
        ).all()
        order = {t: i for i, t in enumerate(inserted_types)}
        return sorted(events, key=lambda e: order[e.anomaly_type])

    def detect_for_activity(self, server_id: int, activity_id: str) -> Optional[List[AnomalyEvent]]:
        """Detect for an already geolocated activity. None when the activity is unknown."""
        activity = self.db.query(Activity).filter(
            and_(Activity.id == activity_id, Activity.server_id == server_id)
        ).first()
        if activity is None:
            return None
        return self.detect(activity, self.locations.get_location(activity_id))
