from .activity import User, Activity, PlaybackSession
from .activity_location import ActivityLocation
from .user_fingerprint import UserFingerprint
from .anomaly_event import AnomalyEvent, AnomalyType, Severity
from .background_task import BackgroundTask

__all__ = [
    "User", "Activity", "PlaybackSession", "ActivityLocation", "UserFingerprint",
    "AnomalyEvent", "AnomalyType", "Severity", "BackgroundTask",
]
