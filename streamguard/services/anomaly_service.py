import logging
from datetime import datetime
from typing import Dict, List, Any, Optional
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import func, and_, desc

from streamguard.core.database import SessionLocal
from streamguard.models.anomaly_event import AnomalyEvent

logger = logging.getLogger(__name__)

BULK_RESOLVE_NOTE = "Bulk resolved"


def _pagination(total: int, limit: int, offset: int) -> Dict[str, Any]:
    return {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total}


class AnomalyService:
    """Querying and resolving recorded anomalies.

    An anomaly is either open or resolved and can move back and forth.
    Every operation is scoped to a server, so an id from another server
    behaves as if it did not exist.
    """

    def __init__(self, db: Session = None):
        self.db = db or SessionLocal()

    @staticmethod
    def serialize(anomaly: AnomalyEvent) -> Dict[str, Any]:
        return {
            "id": anomaly.id,
            "user_id": anomaly.user_id,
            "user_name": anomaly.user.name if anomaly.user else None,
            "server_id": anomaly.server_id,
            "activity_id": anomaly.activity_id,
            "anomaly_type": anomaly.anomaly_type,
            "severity": anomaly.severity,
            "details": anomaly.details,
            "resolved": anomaly.resolved,
            "resolved_at": anomaly.resolved_at,
            "resolved_by": anomaly.resolved_by,
            "resolution_note": anomaly.resolution_note,
            "created_at": anomaly.created_at,
        }

    def _scoped(self, server_id: int):
        return self.db.query(AnomalyEvent).filter(AnomalyEvent.server_id == server_id)

    def get_anomaly(self, server_id: int, anomaly_id: int) -> Optional[Dict[str, Any]]:
        anomaly = self._scoped(server_id).filter(AnomalyEvent.id == anomaly_id).first()
        return self.serialize(anomaly) if anomaly else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def severity_breakdown(self, server_id: int) -> Dict[str, int]:
        """Open anomalies per severity."""
        rows = self.db.query(AnomalyEvent.severity, func.count(AnomalyEvent.id)).filter(
            and_(AnomalyEvent.server_id == server_id, AnomalyEvent.resolved.is_(False))
        ).group_by(AnomalyEvent.severity).all()
        return {severity: int(count) for severity, count in rows}

    def list_anomalies(self, server_id: int, resolved: Optional[bool] = None, severity: Optional[str] = None,
                       anomaly_type: Optional[str] = None, user_id: Optional[str] = None,
                       date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                       limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        """Anomalies for a server, most recent first."""
        query = self._scoped(server_id)

        if resolved is not None:
            query = query.filter(AnomalyEvent.resolved.is_(resolved))
        if severity:
            query = query.filter(AnomalyEvent.severity == severity)
        if anomaly_type:
            query = query.filter(AnomalyEvent.anomaly_type == anomaly_type)
        if user_id:
            query = query.filter(AnomalyEvent.user_id == user_id)
        if date_from:
            query = query.filter(AnomalyEvent.created_at >= date_from)
        if date_to:
            query = query.filter(AnomalyEvent.created_at <= date_to)

        total = query.count()
        anomalies = query.options(joinedload(AnomalyEvent.user)).order_by(
            desc(AnomalyEvent.created_at), desc(AnomalyEvent.id)
        ).offset(offset).limit(limit).all()

        return {
            "anomalies": [self.serialize(a) for a in anomalies],
            # Breakdown ignores the filters above and always counts open anomalies
            "severity_breakdown": self.severity_breakdown(server_id),
            "pagination": _pagination(total, limit, offset),
        }

    def user_anomalies(self, server_id: int, user_id: str, resolved: Optional[bool] = None,
                       limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        query = self._scoped(server_id).filter(AnomalyEvent.user_id == user_id)
        if resolved is not None:
            query = query.filter(AnomalyEvent.resolved.is_(resolved))

        total = query.count()
        anomalies = query.options(joinedload(AnomalyEvent.user)).order_by(
            desc(AnomalyEvent.created_at), desc(AnomalyEvent.id)
        ).offset(offset).limit(limit).all()

        unresolved_count = self._scoped(server_id).filter(
            and_(AnomalyEvent.user_id == user_id, AnomalyEvent.resolved.is_(False))
        ).count()

        return {
            "anomalies": [self.serialize(a) for a in anomalies],
            "unresolved_count": unresolved_count,
            "pagination": _pagination(total, limit, offset),
        }

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _commit(self, action: str, server_id: int):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to {action} anomalies on server {server_id}")
            raise

    def resolve(self, server_id: int, anomaly_id: int, resolved_by: Optional[str] = None,
                resolution_note: Optional[str] = None) -> bool:
        """Mark an anomaly as resolved. False when it does not exist on this server."""
        anomaly = self._scoped(server_id).filter(AnomalyEvent.id == anomaly_id).first()
        if not anomaly:
            return False

        anomaly.resolved = True
        anomaly.resolved_at = datetime.utcnow()
        anomaly.resolved_by = resolved_by
        anomaly.resolution_note = resolution_note
        self._commit("resolve", server_id)
        logger.info(f"Anomaly {anomaly_id} resolved on server {server_id} by {resolved_by or 'unknown'}")
        return True

    def unresolve(self, server_id: int, anomaly_id: int) -> bool:
        """Reopen an anomaly, clearing its resolution fields."""
        anomaly = self._scoped(server_id).filter(AnomalyEvent.id == anomaly_id).first()
        if not anomaly:
            return False

        anomaly.resolved = False
        anomaly.resolved_at = None
        anomaly.resolved_by = None
        anomaly.resolution_note = None
        self._commit("unresolve", server_id)
        logger.info(f"Anomaly {anomaly_id} reopened on server {server_id}")
        return True

    def _resolve_open(self, query, server_id: int, resolved_by: Optional[str],
                      resolution_note: Optional[str]) -> int:
        try:
            count = query.filter(AnomalyEvent.resolved.is_(False)).update(
                {
                    AnomalyEvent.resolved: True,
                    AnomalyEvent.resolved_at: datetime.utcnow(),
                    AnomalyEvent.resolved_by: resolved_by,
                    AnomalyEvent.resolution_note: resolution_note,
                },
                synchronize_session=False,
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to bulk resolve anomalies on server {server_id}")
            raise
        return count

    def resolve_all(self, server_id: int, resolved_by: Optional[str] = None,
                    resolution_note: Optional[str] = None) -> int:
        """Resolve every open anomaly on a server."""
        count = self._resolve_open(self._scoped(server_id), server_id, resolved_by,
                                   resolution_note or BULK_RESOLVE_NOTE)
        logger.info(f"Bulk resolved {count} anomalies on server {server_id}")
        return count

    def resolve_by_ids(self, server_id: int, anomaly_ids: List[int], resolved_by: Optional[str] = None,
                       resolution_note: Optional[str] = None) -> int:
        """Resolve the open anomalies among the given ids; ids from other servers are ignored."""
        if not anomaly_ids:
            return 0
        query = self._scoped(server_id).filter(AnomalyEvent.id.in_(anomaly_ids))
        count = self._resolve_open(query, server_id, resolved_by, resolution_note)
        logger.info(f"Resolved {count} of {len(anomaly_ids)} requested anomalies on server {server_id}")
        return count
