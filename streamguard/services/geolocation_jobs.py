"""
Geolocation Jobs

The work a task runner executes for a server:
- Geolocating activities that carry a client IP but no location yet
- Running anomaly detection for every newly geolocated activity
- Rebuilding all user fingerprints once a backfill is done
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from streamguard.config import AppConfig
from streamguard.core.database import SessionLocal
from streamguard.models.activity_location import ActivityLocation, UNKNOWN_IP
from streamguard.services.anomaly_detector import AnomalyDetector
from streamguard.services.fingerprint_service import FingerprintService
from streamguard.services.geolocation import (
    GeoLookupError, GeoResolver, build_resolver, geolocate_ip, parse_ip_from_overview,
)
from streamguard.services.location_store import LocationStore

logger = logging.getLogger(__name__)


class GeolocationJobs:
    """Batch geolocation, detection and fingerprint rebuilds for one server."""

    def __init__(self, db: Session = None, resolver: Optional[GeoResolver] = None,
                 config: Optional[AppConfig] = None):
        self.db = db or SessionLocal()
        self.config = config or AppConfig()
        self.resolver = resolver or build_resolver(self.config.geo)
        self.locations = LocationStore(self.db)
        self.detector = AnomalyDetector(self.db, self.config.detection, self.locations)
        self.fingerprints = FingerprintService(self.db, self.config.fingerprint, self.locations)

    def geolocate_pending(self, server_id: int, batch_size: Optional[int] = None) -> Dict[str, int]:
        """Geolocate one batch of pending activities, oldest first.

        Locations for the whole batch are committed together. Activities the
        resolver could not be asked about stay pending for the next pass.
        """
        batch_size = batch_size or self.config.backfill.geolocate_batch_size
        activities = self.locations.pending_activities(server_id, limit=batch_size)
        if not activities:
            return {"processed": 0, "located": 0, "failed": 0, "anomalies": 0}

        located = []
        failed = 0
        try:
            for activity in activities:
                ip = parse_ip_from_overview(activity.short_overview)
                if ip is None:
                    logger.debug(f"No IP address in overview of activity {activity.id}")
                    self.locations.add_location(ActivityLocation(
                        activity_id=activity.id, ip_address=UNKNOWN_IP, is_private_ip=True,
                    ))
                    continue

                try:
                    result = geolocate_ip(ip, self.resolver)
                except GeoLookupError as e:
                    logger.warning(f"Geolocation failed for activity {activity.id}: {e}")
                    failed += 1
                    continue

                geo = result.geo
                location = self.locations.add_location(ActivityLocation(
                    activity_id=activity.id,
                    ip_address=ip,
                    country_code=geo.country_code,
                    country=geo.country,
                    region=geo.region,
                    city=geo.city,
                    latitude=geo.latitude,
                    longitude=geo.longitude,
                    timezone=geo.timezone,
                    is_private_ip=result.is_private_ip,
                ))
                located.append((activity, location))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to store locations for server {server_id}")
            raise

        anomalies = 0
        for activity, location in located:
            if location.is_private_ip or not activity.user_id:
                continue
            anomalies += len(self.detector.detect(activity, location))

        stats = {
            "processed": len(activities),
            "located": len(activities) - failed,
            "failed": failed,
            "anomalies": anomalies,
        }
        logger.info(f"Geolocation batch for server {server_id}: {stats}")
        return stats

    def backfill_locations(self, server_id: int, batch_size: Optional[int] = None,
                           max_activities: Optional[int] = None) -> Dict[str, int]:
        """Drain the geolocation queue in batches, then rebuild fingerprints."""
        batch_size = batch_size or self.config.backfill.backfill_batch_size
        max_activities = max_activities or self.config.backfill.max_activities
        start_time = datetime.utcnow()

        processed = 0
        anomalies = 0
        while processed < max_activities:
            size = min(batch_size, max_activities - processed)
            stats = self.geolocate_pending(server_id, size)
            processed += stats["processed"]
            anomalies += stats["anomalies"]

            if stats["processed"] < size:
                break
            # Every lookup in the batch failed; retrying now would spin on the same rows
            if stats["located"] == 0:
                logger.warning(f"Backfill for server {server_id} stopped: no progress in last batch")
                break
        else:
            logger.warning(f"Backfill for server {server_id} hit the limit of {max_activities} activities")

        fingerprints = self.calculate_fingerprints(server_id)

        duration = (datetime.utcnow() - start_time).total_seconds()
        logger.info(
            f"Backfill completed server_id={server_id} activities={processed} "
            f"anomalies={anomalies} fingerprints={fingerprints} duration_s={duration:.1f}"
        )
        return {
            "activities_processed": processed,
            "anomalies_detected": anomalies,
            "fingerprints_updated": fingerprints,
        }

    def calculate_fingerprints(self, server_id: int) -> int:
        return self.fingerprints.rebuild_server(server_id)
