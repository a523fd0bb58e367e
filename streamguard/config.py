from __future__ import annotations
from dataclasses import dataclass, field
from typing import Literal, Optional
import os


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    return int(raw) if raw else None


@dataclass
class DatabaseConfig:
    # Get database credentials from environment
    user: str = os.getenv("DB_USER", "postgres")
    password: str = os.getenv("DB_PASSWORD", "postgres")
    host: str = os.getenv("DB_HOST", "localhost")
    port: str = os.getenv("DB_PORT", "5432")
    name: str = os.getenv("DB_NAME", "streamguard")
    echo: bool = os.getenv("SQLALCHEMY_ECHO", "false").lower() in ("1", "true", "yes")

    @property
    def url(self) -> str:
        """Construct database URL from components or use DATABASE_URL if provided"""
        return os.getenv(
            "DATABASE_URL",
            f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"
        )

@dataclass
class DetectionConfig:
    # Above commercial jet cruising speed
    impossible_speed_kmh: float = float(os.getenv("IMPOSSIBLE_TRAVEL_SPEED_KMH", "900"))
    critical_speed_kmh: float = float(os.getenv("CRITICAL_TRAVEL_SPEED_KMH", "2000"))
    # Below this, coordinate jitter between lookups is not travel
    min_travel_distance_km: float = float(os.getenv("MIN_TRAVEL_DISTANCE_KM", "100"))
    concurrent_window_minutes: int = int(os.getenv("CONCURRENT_WINDOW_MINUTES", "5"))
    concurrent_min_sessions: int = int(os.getenv("CONCURRENT_MIN_SESSIONS", "2"))
    # Profiles knowing fewer countries than this get escalated new_country severity
    forming_profile_countries: int = int(os.getenv("FORMING_PROFILE_COUNTRIES", "3"))

@dataclass
class FingerprintConfig:
    # None means the full history is folded into the profile
    window_days: Optional[int] = _optional_int("FINGERPRINT_WINDOW_DAYS")

@dataclass
class BackfillConfig:
    geolocate_batch_size: int = int(os.getenv("GEOLOCATE_BATCH_SIZE", "100"))
    backfill_batch_size: int = int(os.getenv("BACKFILL_BATCH_SIZE", "500"))
    max_activities: int = int(os.getenv("BACKFILL_MAX_ACTIVITIES", "100000"))
    backfill_expire_minutes: int = int(os.getenv("BACKFILL_EXPIRE_MINUTES", "360"))
    fingerprint_expire_minutes: int = int(os.getenv("FINGERPRINT_EXPIRE_MINUTES", "60"))

@dataclass
class JobServerConfig:
    runner: Literal["local", "job_server"] = os.getenv("TASK_RUNNER", "local")  # type: ignore[assignment]
    url: str = os.getenv("JOB_SERVER_URL", "http://localhost:3001")
    timeout_seconds: float = float(os.getenv("JOB_SERVER_TIMEOUT", "10"))

@dataclass
class GeoLookupConfig:
    # Empty disables lookups; "{ip}" is substituted with the address
    url_template: str = os.getenv("GEO_LOOKUP_URL", "")
    timeout_seconds: float = float(os.getenv("GEO_LOOKUP_TIMEOUT", "5"))

@dataclass
class AppConfig:
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    job_server: JobServerConfig = field(default_factory=JobServerConfig)
    geo: GeoLookupConfig = field(default_factory=GeoLookupConfig)
